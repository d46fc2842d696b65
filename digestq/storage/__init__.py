"""Durable collections: events, window claims, prepared windows, summaries, outbox."""
