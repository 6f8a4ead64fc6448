"""Multiplayer domain services: round state, stores, realtime and sessions.

Round rules live in plain functions over the ``game_state`` document so
that HTTP routes, socket handlers and the session controller share one
implementation, keeping transport concerns apart from game mechanics.
"""
