"""
Infrastructure Layer
=====================

Low-level technical concerns shared across modules:
- Structured logging setup
- Grafana OTLP metrics export
"""
