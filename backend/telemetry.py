# telemetry.py — OpenTelemetry instrumentation for Collabute
"""
Tracing for the API and the job workers. Spans are exported to an OTLP
collector when OTEL_EXPORTER_OTLP_ENDPOINT is set; otherwise setup is a no-op.
"""
import os
import logging

logger = logging.getLogger("collabute.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "collabute-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None, service_name: str = SERVICE_NAME):
    """Initialise tracing and instrument FastAPI, SQLAlchemy, httpx and Redis.

    `app` is omitted by the standalone worker, which only needs the client
    instrumentations.
    """
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        resource = Resource.create({
            RES_SVC_NAME: service_name,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
        trace.set_tracer_provider(provider)

        if app is not None:
            try:
                from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
                FastAPIInstrumentor.instrument_app(
                    app,
                    excluded_urls="health,ws/chat",
                    tracer_provider=provider,
                )
                logger.info("FastAPI instrumented with OpenTelemetry")
            except ImportError:
                logger.warning("opentelemetry-instrumentation-fastapi not installed")

        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
            SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

        # GitHub and Resend calls
        try:
            from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
            HTTPXClientInstrumentor().instrument(tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-httpx not installed")

        # Queue store and relay
        try:
            from opentelemetry.instrumentation.redis import RedisInstrumentor
            RedisInstrumentor().instrument(tracer_provider=provider)
        except ImportError:
            logger.warning("opentelemetry-instrumentation-redis not installed")

        logger.info(f"OpenTelemetry initialised for {service_name} → {OTLP_ENDPOINT}")
        return provider

    except ImportError:
        logger.info("OpenTelemetry SDK not installed — tracing disabled")
        return None
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None
