"""
channels — Notification sinks, one per delivery channel.

Each sink exposes:
    name                      unique key in a DispatchOutcome
    kind                      SinkKind (broadcast / push / sms)
    await notify(alert)    →  SinkResult

A sink signals failure by raising SinkFailure. Timeouts and isolation
from other sinks are handled by the dispatch coordinator, not here.
"""
