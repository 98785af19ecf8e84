"""
Acceptance tests: watchlist reconciliation

Rules:
  - add then remove of an unwatched symbol leaves membership as it started
  - a failed mutation restores the exact pre-mutation snapshot and row flag
  - one in-flight mutation per symbol
  - ambiguous move/copy/remove is rejected before any network call
  - a fresh authoritative fetch clears overrides, except those still in flight
  - a membership read that lands late never erases a later confirm
"""

import asyncio

import pytest

from stockscreener.services.errors import (
    AmbiguousMembershipError,
    MutationPendingError,
    WatchlistMutationError,
)
from stockscreener.services.watchlist_state import (
    MembershipLedger,
    MembershipState,
    WatchlistReconciler,
)


class FakeMembershipClient:
    """In-memory membership store recording every call."""

    def __init__(self, memberships=None, fail_on=(), gate=None):
        self.server = {s: set(ids) for s, ids in (memberships or {}).items()}
        self.fail_on = set(fail_on)
        self.gate = gate
        # one-shot: the next list read snapshots the server, then waits on it
        self.list_gate = None
        self.calls = []

    async def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.gate is not None:
            await self.gate.wait()
        if name in self.fail_on:
            raise RuntimeError(f"{name} rejected")

    async def list_memberships(self):
        if "list" in self.fail_on:
            raise RuntimeError("list rejected")
        entries = [
            {"symbol": s, "watchlist_id": wl}
            for s, ids in self.server.items()
            for wl in ids
        ]
        gate, self.list_gate = self.list_gate, None
        if gate is not None:
            await gate.wait()
        return entries

    async def add(self, symbol, watchlist_id=None):
        await self._call("add", symbol, watchlist_id)
        self.server.setdefault(symbol, set()).add(watchlist_id)

    async def remove(self, symbol, watchlist_id=None):
        await self._call("remove", symbol, watchlist_id)
        self.server.get(symbol, set()).discard(watchlist_id)
        if not self.server.get(symbol):
            self.server.pop(symbol, None)

    async def move(self, symbol, from_id, to_id):
        await self._call("move", symbol, from_id, to_id)
        ids = self.server.setdefault(symbol, set())
        ids.discard(from_id)
        ids.add(to_id)

    async def copy(self, symbol, from_id, to_id):
        await self._call("copy", symbol, from_id, to_id)
        self.server.setdefault(symbol, set()).add(to_id)


class FakeRows:
    def __init__(self, flags=None):
        self.flags = dict(flags or {})
        self.history = []

    def get_row_flag(self, symbol):
        return self.flags.get(symbol)

    def set_row_flag(self, symbol, value):
        self.history.append((symbol, value))
        self.flags[symbol] = value


async def _reconciler(memberships=None, **kw):
    client = FakeMembershipClient(memberships, **kw)
    rows = FakeRows()
    rec = WatchlistReconciler(client, rows=rows)
    await rec.refresh()
    return rec, client, rows


# ---------------------------------------------------------------------------
# Round trips
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_then_remove_restores_initial_membership():
    rec, client, rows = await _reconciler({"MSFT": {1}})
    before = rec.ledger.snapshot()

    await rec.add("aapl", 1)
    assert rec.ledger.is_watched("AAPL")
    assert rows.flags["AAPL"] is True

    await rec.remove("AAPL")
    assert rec.ledger.snapshot() == before
    assert rows.flags["AAPL"] is False
    assert [c[0] for c in client.calls] == ["add", "remove"]


@pytest.mark.asyncio
async def test_add_is_idempotent():
    rec, _, _ = await _reconciler({"AAPL": {1}})
    await rec.add("AAPL", 1)
    assert rec.ledger.memberships("AAPL") == frozenset({1})


@pytest.mark.asyncio
async def test_toggle_adds_then_removes():
    rec, _, _ = await _reconciler()
    assert await rec.toggle("KO") is True
    assert rec.ledger.is_watched("KO")
    assert await rec.toggle("KO") is False
    assert not rec.ledger.is_watched("KO")


@pytest.mark.asyncio
async def test_move_and_copy():
    rec, client, _ = await _reconciler({"AAPL": {1}})
    await rec.copy("AAPL", 2)
    assert rec.ledger.memberships("AAPL") == frozenset({1, 2})
    await rec.move("AAPL", 3, from_id=2)
    assert rec.ledger.memberships("AAPL") == frozenset({1, 3})
    assert client.calls[-1] == ("move", "AAPL", 2, 3)


# ---------------------------------------------------------------------------
# Failure / cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_add_restores_exact_snapshot_and_row_flag():
    rec, client, rows = await _reconciler({"MSFT": {1}}, fail_on={"add"})
    rows.flags["AAPL"] = False
    before = rec.ledger.snapshot()

    with pytest.raises(WatchlistMutationError):
        await rec.add("AAPL", 1)

    assert rec.ledger.snapshot() == before
    assert not rec.ledger.is_pending("AAPL")
    assert not rec.ledger.has_override("AAPL")
    assert rows.flags["AAPL"] is False
    # optimistic flag was shown while in flight
    assert ("AAPL", True) in rows.history


@pytest.mark.asyncio
async def test_failed_move_keeps_source_membership():
    rec, _, _ = await _reconciler({"AAPL": {1}}, fail_on={"move"})
    with pytest.raises(WatchlistMutationError):
        await rec.move("AAPL", 2)
    assert rec.ledger.memberships("AAPL") == frozenset({1})
    assert rec.ledger.state("AAPL", 1) is MembershipState.MEMBER


@pytest.mark.asyncio
async def test_cancelled_mutation_rolls_back():
    gate = asyncio.Event()
    rec, _, rows = await _reconciler(gate=gate)
    task = asyncio.create_task(rec.add("NVDA", 1))
    await asyncio.sleep(0)
    assert rec.ledger.is_pending("NVDA")

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not rec.ledger.is_watched("NVDA")
    assert not rec.ledger.is_pending("NVDA")
    assert rows.flags["NVDA"] is None


@pytest.mark.asyncio
async def test_refresh_failure_after_success_keeps_confirmed_state():
    rec, client, _ = await _reconciler()
    client.fail_on.add("list")
    await rec.add("AAPL", 1)
    assert rec.ledger.authoritative("AAPL") == frozenset({1})
    assert not rec.ledger.has_override("AAPL")


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_mutation_while_in_flight_is_rejected():
    gate = asyncio.Event()
    rec, client, _ = await _reconciler(gate=gate)
    first = asyncio.create_task(rec.add("AAPL", 1))
    await asyncio.sleep(0)

    assert rec.ledger.state("AAPL", 1) is MembershipState.PENDING_ADD
    with pytest.raises(MutationPendingError):
        await rec.remove("AAPL", 1)

    gate.set()
    await first
    assert rec.ledger.is_watched("AAPL")
    assert [c[0] for c in client.calls] == ["add"]


@pytest.mark.asyncio
async def test_late_membership_read_does_not_erase_later_confirm():
    """AAPL's follow-up read is held; MSFT confirms meanwhile; AAPL's read lands last."""
    rec, client, _ = await _reconciler()
    held = asyncio.Event()
    client.list_gate = held

    first = asyncio.create_task(rec.add("AAPL", 1))
    for _ in range(5):
        await asyncio.sleep(0)
    assert client.list_gate is None  # AAPL's read is now parked on `held`

    await rec.add("MSFT", 1)
    held.set()
    await first

    assert client.server == {"AAPL": {1}, "MSFT": {1}}
    assert rec.ledger.is_watched("MSFT")
    assert rec.ledger.is_watched("AAPL")


def test_read_sent_before_confirm_keeps_that_confirm():
    ledger = MembershipLedger([])
    since = ledger.refresh_token()
    token = ledger.begin_add("MSFT", 1)
    ledger.confirm(token)

    # the server answered before it saw MSFT
    assert ledger.replace_authoritative([{"symbol": "AAPL", "watchlist_id": 1}], since=since)
    assert ledger.authoritative("MSFT") == frozenset({1})
    assert ledger.authoritative("AAPL") == frozenset({1})


def test_read_older_than_applied_read_is_dropped():
    ledger = MembershipLedger([])
    old = ledger.refresh_token()
    ledger.confirm(ledger.begin_add("MSFT", 1))
    new = ledger.refresh_token()

    assert ledger.replace_authoritative([{"symbol": "MSFT", "watchlist_id": 1}], since=new)
    assert not ledger.replace_authoritative([], since=old)
    assert ledger.is_watched("MSFT")


# ---------------------------------------------------------------------------
# Ambiguity
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_move_from_multiple_lists_needs_source():
    rec, client, _ = await _reconciler({"AAPL": {1, 2}})
    with pytest.raises(AmbiguousMembershipError):
        await rec.move("AAPL", 3)
    with pytest.raises(AmbiguousMembershipError):
        await rec.remove("AAPL")
    assert client.calls == []


@pytest.mark.asyncio
async def test_copy_of_unwatched_symbol_is_ambiguous():
    rec, client, _ = await _reconciler()
    with pytest.raises(AmbiguousMembershipError):
        await rec.copy("AAPL", 2)
    assert client.calls == []


@pytest.mark.asyncio
async def test_move_to_same_list_or_from_wrong_list_is_rejected():
    rec, client, _ = await _reconciler({"AAPL": {1}})
    with pytest.raises(AmbiguousMembershipError):
        await rec.move("AAPL", 1)
    with pytest.raises(AmbiguousMembershipError):
        await rec.move("AAPL", 3, from_id=2)
    assert client.calls == []


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def test_fresh_fetch_clears_idle_overrides_but_keeps_in_flight():
    ledger = MembershipLedger([{"symbol": "AAPL", "watchlist_id": 1}])
    idle = ledger.begin_add("MSFT", 1)
    ledger.confirm(idle)
    ledger._overrides["MSFT"] = frozenset({9})  # leftover local view
    in_flight = ledger.begin_add("KO", 2)

    ledger.replace_authoritative([{"symbol": "AAPL", "watchlist_id": 1}])

    assert not ledger.has_override("MSFT")
    assert not ledger.is_watched("MSFT")
    assert ledger.has_override("KO")
    assert ledger.memberships("KO") == frozenset({2})
    ledger.confirm(in_flight)
    assert ledger.authoritative("KO") == frozenset({2})


def test_stale_token_is_ignored():
    ledger = MembershipLedger([])
    token = ledger.begin_add("AAPL", 1)
    ledger.revert(token)
    ledger.confirm(token)
    assert not ledger.is_watched("AAPL")


def test_revert_restores_prior_override():
    ledger = MembershipLedger([{"symbol": "AAPL", "watchlist_id": 1}])
    first = ledger.begin_copy("AAPL", 2)
    ledger.confirm(first)
    ledger._overrides["AAPL"] = frozenset({1, 2, 5})
    second = ledger.begin_remove("AAPL", 5)
    assert ledger.memberships("AAPL") == frozenset({1, 2})
    ledger.revert(second)
    assert ledger.memberships("AAPL") == frozenset({1, 2, 5})


def test_unloaded_ledger_reports_not_loaded():
    ledger = MembershipLedger()
    assert not ledger.loaded
    ledger.replace_authoritative([{"symbol": " aapl ", "watchlist_id": None}])
    assert ledger.loaded
    assert ledger.memberships("AAPL") == frozenset({None})
    assert ledger.watched_symbols() == {"AAPL"}
