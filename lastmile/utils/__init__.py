"""Shared helpers: platform paths and PII redaction."""
