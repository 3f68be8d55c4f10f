# jobs — Background job queues, processors and workers
