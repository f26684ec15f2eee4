"""Session domain services: identity, scoring ledger, teams, roster import
and live snapshots.

HTTP routes and socket handlers call into these modules; transport concerns
stay in ``trainboard.api`` and ``trainboard.socketio_events``.
"""
