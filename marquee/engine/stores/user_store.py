"""Watchlist maintenance for catalog users."""
from __future__ import annotations

from sqlmodel import select

from ..models import UserRecord
from ..schemas import UserModel
from .base import RecordStore


class UserStore(RecordStore[UserRecord, UserModel]):
    record_type = UserRecord
    model_type = UserModel
    key_fields = ("username",)

    def prune_watchlists(self, title_keys: set[str], channel_keys: set[str]) -> int:
        """Drop watchlist entries that point at titles or channels that no longer exist."""

        removed = 0
        with self._lock, self._session() as session:
            for record in session.exec(select(UserRecord)):
                watchlist = dict(record.watchlist or {})
                titles = [key for key in watchlist.get("titles", []) if key in title_keys]
                live = [key for key in watchlist.get("live", []) if key in channel_keys]
                dropped = len(watchlist.get("titles", [])) - len(titles)
                dropped += len(watchlist.get("live", [])) - len(live)
                if dropped:
                    watchlist["titles"] = titles
                    watchlist["live"] = live
                    record.watchlist = watchlist
                    session.add(record)
                    removed += dropped
            session.commit()
        return removed
