"""Aggregator server: operation orchestration, HTTP API and CLI."""
