"""
Block and wallet-transaction event ingest.
"""
