"""
Core plumbing: settings, logging, exceptions and the durable store.
"""
