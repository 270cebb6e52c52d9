"""
Read-only SQL query sandbox for the SQL Katas curriculum.
"""

__version__ = "0.1.0"
