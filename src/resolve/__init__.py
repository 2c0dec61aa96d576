"""
Conflict resolution between externally sourced and local records.
"""
