"""
Pulse — Activity Tracking & Aggregation for Discord Presence
=============================================================
Turns a guild's presence stream (online status, voice channels, games,
Spotify) into bounded sessions and per-user daily / monthly counters
that stay correct across resets, restarts and lost events.

Package layout::

    pulse/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Metrics, aliases, UTC calendar helpers
    ├── errors.py          # PersistenceError, InvalidStatsError
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # activity_sessions, user_stats
    ├── engine/
    │   ├── events.py      # ActivityEvent + Session values
    │   ├── normalizer.py  # PresenceSnapshot diff → events
    │   ├── sessions.py    # Per-key session state machine
    │   └── dispatcher.py  # Per-key event queues
    ├── services/
    │   ├── counter_store.py          # Durable counters
    │   ├── reset_scheduler.py        # Daily / monthly resets
    │   ├── session_store.py          # Append-only session log
    │   ├── aggregator.py             # Stats queries
    │   ├── reconciliation_service.py # Stale session sweeper
    │   └── tracker.py                # Wiring
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/
    │       ├── presence.py  # Gateway → snapshots, liveness loop
    │       └── tasks.py     # Sweep / flush loops
    └── api/
        ├── main.py        # FastAPI app factory
        └── routes/        # Stats + admin endpoints
"""

__version__ = "0.1.0"
