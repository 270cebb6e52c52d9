"""
Validators for learner-submitted SQL.
"""

from .sql_policy import classify_statement, tokenize

__all__ = ["classify_statement", "tokenize"]
