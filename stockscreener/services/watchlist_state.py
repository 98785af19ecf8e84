"""
Watchlist reconciliation state machine.

Tracks per-symbol membership across several named watchlists with an
optimistic local override on top of the authoritative (server) map.

States per (symbol, watchlist_id):

    ABSENT ──add──▶ PENDING_ADD ──ok──▶ MEMBER
    MEMBER ──remove──▶ PENDING_REMOVE ──ok──▶ ABSENT
    MEMBER ──move/copy──▶ PENDING_MOVE / PENDING_COPY ──ok──▶ target updated
    any PENDING_* ──error──▶ exact pre-mutation snapshot

Rules:
  - displayed membership = override if one exists for the symbol, else authoritative
  - one mutation per symbol at a time; a second trigger raises MutationPendingError
  - move/copy (and remove without an explicit list) must resolve their source
    list from current membership, else AmbiguousMembershipError before any call
  - a fresh authoritative fetch clears every override not backing an in-flight
    mutation
  - a membership read sent before a confirm never erases that confirm; reads
    that land out of order are dropped

MembershipLedger is pure and synchronous. WatchlistReconciler drives it against
the membership client and patches dependent row flags.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from stockscreener.services.errors import (
    AmbiguousMembershipError,
    MutationPendingError,
    WatchlistMutationError,
)

logger = logging.getLogger(__name__)

WatchlistId = int | None
_MISSING = object()


class MembershipState(enum.Enum):
    ABSENT = "absent"
    PENDING_ADD = "pending_add"
    MEMBER = "member"
    PENDING_REMOVE = "pending_remove"
    PENDING_MOVE = "pending_move"
    PENDING_COPY = "pending_copy"


@dataclass(frozen=True, eq=False)
class PendingMutation:
    """Token returned by begin_*; hand it back to confirm() or revert()."""

    symbol: str
    kind: MembershipState
    from_id: WatchlistId
    to_id: WatchlistId
    # override for the symbol before this mutation (_MISSING when there was none)
    prior_override: Any


def _norm_symbol(symbol: str) -> str:
    s = (symbol or "").strip().upper()
    if not s:
        raise ValueError("symbol is required")
    return s


def _apply(members: frozenset, m: PendingMutation) -> frozenset:
    if m.kind is MembershipState.PENDING_ADD or m.kind is MembershipState.PENDING_COPY:
        return members | {m.to_id}
    if m.kind is MembershipState.PENDING_REMOVE:
        return members - {m.from_id}
    if m.kind is MembershipState.PENDING_MOVE:
        return (members - {m.from_id}) | {m.to_id}
    raise ValueError(f"not a mutation state: {m.kind}")


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class MembershipLedger:
    def __init__(self, entries: Iterable[Mapping[str, Any]] | None = None):
        self._authoritative: dict[str, frozenset] = {}
        self._overrides: dict[str, frozenset] = {}
        self._pending: dict[str, PendingMutation] = {}
        # confirmations are numbered; a refresh carries the number current when it was sent
        self._confirm_seq = 0
        self._confirmed: list[tuple[int, PendingMutation]] = []
        self._applied_since = 0
        self.loaded = False
        if entries is not None:
            self.replace_authoritative(entries)

    # -- reads ---------------------------------------------------------------

    def memberships(self, symbol: str) -> frozenset:
        """Displayed membership: the override when present, else authoritative."""
        s = _norm_symbol(symbol)
        if s in self._overrides:
            return self._overrides[s]
        return self._authoritative.get(s, frozenset())

    def authoritative(self, symbol: str) -> frozenset:
        return self._authoritative.get(_norm_symbol(symbol), frozenset())

    def is_watched(self, symbol: str) -> bool:
        return bool(self.memberships(symbol))

    def is_pending(self, symbol: str) -> bool:
        return _norm_symbol(symbol) in self._pending

    def has_override(self, symbol: str) -> bool:
        return _norm_symbol(symbol) in self._overrides

    def pending_symbols(self) -> frozenset:
        return frozenset(self._pending)

    def watched_symbols(self) -> set[str]:
        symbols = set(self._authoritative) | set(self._overrides)
        return {s for s in symbols if self.memberships(s)}

    def state(self, symbol: str, watchlist_id: WatchlistId) -> MembershipState:
        s = _norm_symbol(symbol)
        m = self._pending.get(s)
        if m is not None:
            if m.kind is MembershipState.PENDING_MOVE and watchlist_id in (m.from_id, m.to_id):
                return m.kind
            if m.kind is MembershipState.PENDING_REMOVE and watchlist_id == m.from_id:
                return m.kind
            if m.kind in (MembershipState.PENDING_ADD, MembershipState.PENDING_COPY) and watchlist_id == m.to_id:
                return m.kind
        return MembershipState.MEMBER if watchlist_id in self.memberships(s) else MembershipState.ABSENT

    def snapshot(self) -> dict[str, frozenset]:
        """Displayed membership for every known symbol."""
        symbols = set(self._authoritative) | set(self._overrides)
        return {s: self.memberships(s) for s in sorted(symbols)}

    # -- authoritative data --------------------------------------------------

    def refresh_token(self) -> int:
        """Stamp for a membership read about to be sent; pass it back as `since`."""
        return self._confirm_seq

    def replace_authoritative(self, entries: Iterable[Mapping[str, Any]], since: int | None = None) -> bool:
        """
        Swap in a fresh server map built from {symbol, watchlist_id} entries and
        drop every override that is not backing an in-flight mutation.

        `since` is the refresh_token() taken when the read was sent. Mutations
        confirmed after that point are folded back on top of the response; a
        response older than one already applied is discarded. Returns whether
        the response was applied.
        """
        if since is not None and since < self._applied_since:
            logger.debug("[Watchlist] stale membership read (since=%d < %d) dropped", since, self._applied_since)
            return False

        fresh: dict[str, set] = {}
        for entry in entries:
            symbol = entry.get("symbol")
            if not isinstance(symbol, str) or not symbol.strip():
                continue
            fresh.setdefault(symbol.strip().upper(), set()).add(entry.get("watchlist_id"))

        if since is None:
            since = self._confirm_seq
        for seq, token in self._confirmed:
            if seq > since:
                fresh[token.symbol] = set(_apply(frozenset(fresh.get(token.symbol, ())), token))
        self._confirmed = [(seq, t) for seq, t in self._confirmed if seq > since]
        self._applied_since = since

        self._authoritative = {s: frozenset(ids) for s, ids in fresh.items() if ids}
        self.loaded = True

        stale = [s for s in self._overrides if s not in self._pending]
        for s in stale:
            del self._overrides[s]
        if stale:
            logger.debug("[Watchlist] cleared %d stale overrides on refresh", len(stale))
        return True

    # -- source resolution ---------------------------------------------------

    def resolve_source(self, symbol: str, from_id: WatchlistId = None) -> WatchlistId:
        """
        Source list for a remove/move/copy.
        Explicit from_id must be a current membership; otherwise the symbol must
        be in exactly one list.
        """
        s = _norm_symbol(symbol)
        members = self.memberships(s)
        if from_id is not None:
            if from_id not in members:
                raise AmbiguousMembershipError(f"{s} is not in watchlist {from_id}", s)
            return from_id
        if not members:
            raise AmbiguousMembershipError(f"{s} is not in any watchlist", s)
        if len(members) > 1:
            raise AmbiguousMembershipError(
                f"{s} is in {len(members)} watchlists; source watchlist is required", s
            )
        return next(iter(members))

    def _resolve_list_source(self, symbol: str, from_id: WatchlistId) -> int:
        source = self.resolve_source(symbol, from_id)
        if source is None:
            raise AmbiguousMembershipError(f"{symbol} has no resolved watchlist id yet", symbol)
        return source

    # -- transitions ---------------------------------------------------------

    def _begin(self, symbol: str, kind: MembershipState, from_id: WatchlistId, to_id: WatchlistId) -> PendingMutation:
        token = PendingMutation(
            symbol=symbol,
            kind=kind,
            from_id=from_id,
            to_id=to_id,
            prior_override=self._overrides.get(symbol, _MISSING),
        )
        self._overrides[symbol] = _apply(self.memberships(symbol), token)
        self._pending[symbol] = token
        logger.debug("[Watchlist] %s %s from=%s to=%s", kind.value, symbol, from_id, to_id)
        return token

    def _check_idle(self, symbol: str) -> None:
        if symbol in self._pending:
            raise MutationPendingError(f"a watchlist change for {symbol} is still in flight", symbol)

    def begin_add(self, symbol: str, watchlist_id: WatchlistId = None) -> PendingMutation:
        s = _norm_symbol(symbol)
        self._check_idle(s)
        return self._begin(s, MembershipState.PENDING_ADD, None, watchlist_id)

    def begin_remove(self, symbol: str, watchlist_id: WatchlistId = None) -> PendingMutation:
        s = _norm_symbol(symbol)
        self._check_idle(s)
        source = self.resolve_source(s, watchlist_id)
        return self._begin(s, MembershipState.PENDING_REMOVE, source, None)

    def begin_move(self, symbol: str, to_id: int, from_id: WatchlistId = None) -> PendingMutation:
        s = _norm_symbol(symbol)
        self._check_idle(s)
        source = self._resolve_list_source(s, from_id)
        if to_id == source:
            raise AmbiguousMembershipError(f"{s} is already in watchlist {to_id}", s)
        return self._begin(s, MembershipState.PENDING_MOVE, source, to_id)

    def begin_copy(self, symbol: str, to_id: int, from_id: WatchlistId = None) -> PendingMutation:
        s = _norm_symbol(symbol)
        self._check_idle(s)
        source = self._resolve_list_source(s, from_id)
        if to_id == source:
            raise AmbiguousMembershipError(f"{s} is already in watchlist {to_id}", s)
        return self._begin(s, MembershipState.PENDING_COPY, source, to_id)

    def _settle(self, token: PendingMutation) -> bool:
        if self._pending.get(token.symbol) is not token:
            logger.warning("[Watchlist] stale mutation token for %s ignored", token.symbol)
            return False
        del self._pending[token.symbol]
        return True

    def confirm(self, token: PendingMutation) -> None:
        """Backing call succeeded: fold the mutation into the authoritative map, drop the override."""
        if not self._settle(token):
            return
        self._confirm_seq += 1
        self._confirmed.append((self._confirm_seq, token))
        members = _apply(self._authoritative.get(token.symbol, frozenset()), token)
        if members:
            self._authoritative[token.symbol] = members
        else:
            self._authoritative.pop(token.symbol, None)
        self._overrides.pop(token.symbol, None)

    def revert(self, token: PendingMutation) -> None:
        """Backing call failed: restore the override exactly as it was before begin_*."""
        if not self._settle(token):
            return
        if token.prior_override is _MISSING:
            self._overrides.pop(token.symbol, None)
        else:
            self._overrides[token.symbol] = token.prior_override


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class MembershipClient(Protocol):
    async def list_memberships(self) -> list[dict[str, Any]]: ...
    async def add(self, symbol: str, watchlist_id: WatchlistId = None) -> Any: ...
    async def remove(self, symbol: str, watchlist_id: WatchlistId = None) -> Any: ...
    async def move(self, symbol: str, from_id: int, to_id: int) -> Any: ...
    async def copy(self, symbol: str, from_id: int, to_id: int) -> Any: ...


class RowFlagSink(Protocol):
    """Cached rows that carry a per-symbol is_watched flag."""

    def get_row_flag(self, symbol: str) -> bool | None: ...
    def set_row_flag(self, symbol: str, value: bool | None) -> None: ...


class WatchlistReconciler:
    def __init__(
        self,
        client: MembershipClient,
        ledger: MembershipLedger | None = None,
        rows: RowFlagSink | None = None,
    ):
        self.client = client
        self.ledger = ledger if ledger is not None else MembershipLedger()
        self.rows = rows

    async def refresh(self) -> None:
        since = self.ledger.refresh_token()
        entries = await self.client.list_memberships()
        if self.ledger.replace_authoritative(entries, since=since):
            logger.info("[Watchlist] refreshed %d memberships", len(entries))

    async def add(self, symbol: str, watchlist_id: WatchlistId = None) -> None:
        token = self.ledger.begin_add(symbol, watchlist_id)
        await self._run(token, lambda: self.client.add(token.symbol, watchlist_id))

    async def remove(self, symbol: str, watchlist_id: WatchlistId = None) -> None:
        token = self.ledger.begin_remove(symbol, watchlist_id)
        await self._run(token, lambda: self.client.remove(token.symbol, token.from_id))

    async def move(self, symbol: str, to_id: int, from_id: WatchlistId = None) -> None:
        token = self.ledger.begin_move(symbol, to_id, from_id)
        await self._run(token, lambda: self.client.move(token.symbol, token.from_id, to_id))

    async def copy(self, symbol: str, to_id: int, from_id: WatchlistId = None) -> None:
        token = self.ledger.begin_copy(symbol, to_id, from_id)
        await self._run(token, lambda: self.client.copy(token.symbol, token.from_id, to_id))

    async def toggle(self, symbol: str) -> bool:
        """Star click: remove when watched, add to the default list otherwise. Returns the new state."""
        if self.ledger.is_watched(symbol):
            await self.remove(symbol)
            return False
        await self.add(symbol)
        return True

    async def _run(self, token: PendingMutation, call: Callable[[], Awaitable[Any]]) -> None:
        symbol = token.symbol
        prior_flag = self.rows.get_row_flag(symbol) if self.rows else None
        if self.rows:
            self.rows.set_row_flag(symbol, self.ledger.is_watched(symbol))

        try:
            await call()
        except asyncio.CancelledError:
            self._rollback(token, prior_flag)
            raise
        except Exception as exc:
            self._rollback(token, prior_flag)
            logger.warning("[Watchlist] %s %s failed: %s", token.kind.value, symbol, exc)
            raise WatchlistMutationError(f"could not update watchlist for {symbol}: {exc}", symbol) from exc

        self.ledger.confirm(token)
        if self.rows:
            self.rows.set_row_flag(symbol, self.ledger.is_watched(symbol))
        try:
            await self.refresh()
        except Exception as exc:
            # local state already matches the confirmed mutation
            logger.warning("[Watchlist] refresh after %s %s failed: %s", token.kind.value, symbol, exc)

    def _rollback(self, token: PendingMutation, prior_flag: bool | None) -> None:
        self.ledger.revert(token)
        if self.rows:
            self.rows.set_row_flag(token.symbol, prior_flag)
