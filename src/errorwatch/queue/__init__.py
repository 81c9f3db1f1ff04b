"""Durable job queues — decouple ingestion from processing.

Learn: The API layer only enqueues. Worker pools (one per queue, each with
its own concurrency ceiling) claim, process and acknowledge jobs, with
bounded retries and a dead list for jobs that never succeed.
"""
