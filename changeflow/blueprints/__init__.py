"""
changeflow
Blueprint registry.
"""
