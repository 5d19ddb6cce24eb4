"""
Node, wallet, installer and notification services.
"""
