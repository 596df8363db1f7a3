"""
Utility functions and helpers.

This package contains reusable utilities for file operations, templating,
locking, redaction, and progress output.

Modules:
- files: Reading and writing files with explicit permissions
- lock: Advisory per-plan run lock
- progress: Rich progress output for engine runs
- redact: Masking secrets in log and error text
- templates: Strict Jinja2 template rendering
"""
