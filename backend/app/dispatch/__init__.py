"""
dispatch — Outbound notification dispatch with delivery assurance.

Sub-modules:
    models          — Data structures shared across the subsystem
    validator       — Payload validation + HTML sanitisation
    classifier      — Transport failure taxonomy + sanitised reporting
    retry           — Attempt loop with capped exponential backoff
    ledger          — Append-only NDJSON delivery ledger, stats, retention
    message_types   — Pure per-channel message type rules
    events          — Outcome-event hand-off to the reward tracker
    provider_cache  — TTL cache of provider reachability probes
    dispatcher      — Orchestration of one logical send
    channels/       — Transport contract + simulation backends
"""
