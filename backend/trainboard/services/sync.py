"""Live snapshots of a session's leaderboard and activity feed.

``feed`` is the single per-process hub. Services call ``feed.publish``
after every committed write; the hub rebuilds the full ordered snapshot,
hands it to in-process subscribers and emits it to the Socket.IO room of
the session so every connected client (on any server process sharing the
message queue) receives the same list.
"""
import itertools
import threading

from flask import current_app

PARTICIPANTS = 'participants'
ACTIVITIES = 'activities'
CHANNELS = (PARTICIPANTS, ACTIVITIES)


def room_for(session_id) -> str:
    return f"session:{int(session_id)}"


class Subscription:
    """Handle returned by ``SessionFeed.subscribe``; call ``unsubscribe`` to stop."""

    def __init__(self, feed, session_id, channel, token, owner=None):
        self._feed = feed
        self.session_id = session_id
        self.channel = channel
        self.token = token
        self.owner = owner

    @property
    def active(self) -> bool:
        return self._feed._has(self)

    def unsubscribe(self) -> None:
        self._feed._remove(self)


class SessionFeed:
    def __init__(self, app=None):
        self._listeners = {}  # (session_id, channel) -> {token: callback}
        self._owned = {}  # (owner, session_id, channel) -> Subscription
        self._tokens = itertools.count(1)
        self._lock = threading.RLock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        # Listeners belong to the app they were registered under
        with self._lock:
            self._listeners.clear()
            self._owned.clear()
        app.extensions['session_feed'] = self

    def subscribe(self, session_id, on_update, channel=PARTICIPANTS, owner=None) -> Subscription:
        """Register ``on_update`` and immediately deliver the current snapshot.

        With ``owner`` set, a second subscribe for the same owner, session and
        channel replaces the first, so a component that re-subscribes on
        every render holds one listener at a time.
        """
        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel {channel!r}")
        session_id = int(session_id)
        with self._lock:
            if owner is not None:
                previous = self._owned.get((owner, session_id, channel))
                if previous is not None:
                    self._remove(previous)
            subscription = Subscription(self, session_id, channel, next(self._tokens), owner)
            self._listeners.setdefault((session_id, channel), {})[subscription.token] = on_update
            if owner is not None:
                self._owned[(owner, session_id, channel)] = subscription
        on_update(self.snapshot(session_id, channel))
        return subscription

    def snapshot(self, session_id, channel=PARTICIPANTS):
        from trainboard.services.identity import active_participants
        from trainboard.services.ledger import recent_activities
        if channel == PARTICIPANTS:
            return [p.to_dict() for p in active_participants(session_id)]
        return [a.to_dict() for a in recent_activities(session_id)]

    def publish(self, session_id, channels=CHANNELS) -> None:
        from trainboard import socketio
        session_id = int(session_id)
        for channel in channels:
            payload = self.snapshot(session_id, channel)
            with self._lock:
                callbacks = list(self._listeners.get((session_id, channel), {}).values())
            for callback in callbacks:
                try:
                    callback(payload)
                except Exception:
                    # One broken listener must not starve the others
                    current_app.logger.exception(f"[sync] listener failed session={session_id} channel={channel}")
            socketio.emit(
                f"{channel}_snapshot",
                {'session_id': session_id, channel: payload},
                to=room_for(session_id),
                namespace='/ws',
            )
        current_app.logger.debug(f"[sync] published session={session_id} channels={','.join(channels)}")

    def listener_count(self, session_id, channel=PARTICIPANTS) -> int:
        with self._lock:
            return len(self._listeners.get((int(session_id), channel), {}))

    def _has(self, subscription) -> bool:
        with self._lock:
            return subscription.token in self._listeners.get((subscription.session_id, subscription.channel), {})

    def _remove(self, subscription) -> None:
        with self._lock:
            key = (subscription.session_id, subscription.channel)
            listeners = self._listeners.get(key)
            if listeners is not None:
                listeners.pop(subscription.token, None)
                if not listeners:
                    self._listeners.pop(key, None)
            if subscription.owner is not None:
                owned_key = (subscription.owner, subscription.session_id, subscription.channel)
                if self._owned.get(owned_key) is subscription:
                    self._owned.pop(owned_key, None)


feed = SessionFeed()
