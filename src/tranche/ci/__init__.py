"""Run gating: triggers, gate decisions, run state and concurrency groups."""
