"""
alerts — SOS alert lifecycle and notification fan-out.

Sub-modules:
    models      — Alert record, statuses, dispatch results
    lifecycle   — Create / cancel / acknowledge state machine
    dispatch    — Concurrent, failure-isolated fan-out to sinks
    channels/   — Sinks: real-time broadcast, push, SMS
    store       — AlertStore contract + in-memory / Redis backends
    directory   — ContactDirectory contract + in-memory backend
    events      — In-process event hub for the real-time stream
    container   — Builds the service graph from Settings
"""
