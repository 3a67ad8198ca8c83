"""Relational storage layer: engine policy, ORM tables and migrations."""
