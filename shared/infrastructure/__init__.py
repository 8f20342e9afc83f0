"""
Infrastructure module: correlation ids and entity locks.
"""
