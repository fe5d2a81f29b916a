"""
Integration tests for the execution engine (SQLite-backed cycles)
"""
