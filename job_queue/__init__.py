"""
Job Queue — Per-session dispatch queues and their paced workers.

- SessionQueue keeps each session's jobs in FIFO order with status tracking
- SessionWorker drains one queue, one job at a time, with a pacing interval
- QueueRegistry maps sessions to queues/workers and snapshots them to disk
"""
