"""Durable AI subtask orchestration.

Orchestration functions are plain Python callables driven by a SQLite-backed
step runtime: each named step's JSON result is stored once per run id, and a
retried run replays stored results instead of repeating side effects such
as model calls. The dispatcher is a claim-then-execute polling loop over the
``runtime_events`` table with per-function concurrency limits, so a
single-machine deployment needs no external broker.
"""
