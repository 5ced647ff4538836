"""
channels — Per-channel transport backends.

Each transport exposes:
    async send(destination, content, variant, *, subject=None) → TransportResult
    async verify() → bool                      (reachability probe)

Transports are thin: they either return a message id or raise a
TransportError. Retry, ledger and event logic live in the dispatcher.
"""
