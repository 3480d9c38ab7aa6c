"""
Smart Money Concepts signal engine and futures position lifecycle
"""
