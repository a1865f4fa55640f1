"""
Queue services.
"""
