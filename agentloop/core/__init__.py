"""Core building blocks: model contract, events, guardrails, snapshots, usage, tracing, settings."""
