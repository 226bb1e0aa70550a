"""
Edge service application package.
"""
