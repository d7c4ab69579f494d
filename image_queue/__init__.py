"""
Image Processing Job Queue

A database-backed job queue that runs the image pipeline (hash, safety,
embed) with atomic claims, capped exponential retries, and a leased burst
worker that starts on demand and exits when the queue is idle.
"""

__version__ = "1.0.0"
