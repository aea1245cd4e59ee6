"""
Backend package for the voice-answer service.

Clients post text questions, other clients upload audio answering them.
Audio goes to S3-compatible object storage; question and response metadata
live in a relational store (SQLite or Postgres via SQLAlchemy).
"""
