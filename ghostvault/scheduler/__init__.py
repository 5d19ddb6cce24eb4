"""
Persisted periodic jobs.
"""
