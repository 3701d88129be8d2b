"""
Backup run services.
"""
