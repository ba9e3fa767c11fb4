"""
Monitoring daemon package for the Deye solar fleet.

Polls station and device telemetry from the Deye cloud API, detects faults
and drifting behaviour, annotates them with LLM explanations and emails
deduplicated alerts.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
