"""Durable task dispatcher on a relational store."""

__version__ = "0.1.0"
