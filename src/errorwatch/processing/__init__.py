"""Job handlers: turn queued events, alerts and replays into state changes."""
