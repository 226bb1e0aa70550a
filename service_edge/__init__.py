"""
Edge resilience layer: response caching and circuit breaking.
"""
