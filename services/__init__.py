"""
Background services: the in-process job queue and webhook delivery.
"""
