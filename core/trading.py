"""Trade negotiation state machine.

A trade moves pending -> active -> completed, or to cancelled from either
open state. Every operation is a single sqlite transaction taken under a
process-wide mutex; rejections raise inside the transaction so the rollback
also drops any trade lock acquired earlier in the same call.
"""
from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, TypeVar

from core.state import AppState
from core.util_norm import normalize_expansion, normalize_card_number
from core.db import (
    db_tx, db_trade_get, db_trade_get_open_for_user,
    _lock_try_acquire_with_conn, _lock_release_with_conn,
    _is_missing_with_conn, _remove_missing_with_conn,
    _trade_get_with_conn, _trade_insert_with_conn, _trade_pending_for_proposer_with_conn,
    _trade_set_match_with_conn, _trade_set_confirm_with_conn, _trade_set_status_with_conn,
    _trade_list_stale_with_conn,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING = "pending"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"
OPEN_STATUSES = (PENDING, ACTIVE)


# ---------------- Errors ----------------
class TradeError(Exception):
    code = "TradeError"
    default_message = "That trade action failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AlreadyInTrade(TradeError):
    code = "AlreadyInTrade"
    default_message = "You are already part of an open trade. Finish or cancel it first."

class NotMissing(TradeError):
    code = "NotMissing"
    default_message = "That card is not on your missing list."

class AcceptorMissingCard(TradeError):
    code = "AcceptorMissingCard"
    default_message = "You can't offer a card that is on your own missing list."

class ProposerMissingOfferedCard(TradeError):
    code = "ProposerMissingOfferedCard"
    default_message = "The proposer is missing that card too; offer the requested card or another one."

class NoActiveProposal(TradeError):
    code = "NoActiveProposal"
    default_message = "There is no open trade request to answer."

class SelfTrade(TradeError):
    code = "SelfTrade"
    default_message = "You can't trade with yourself."

class UnknownTrade(TradeError):
    code = "UnknownTrade"
    default_message = "That trade doesn't exist or is no longer open."

class NotAParty(TradeError):
    code = "NotAParty"
    default_message = "Only the two trade participants can do that."

class BadRequest(TradeError):
    code = "BadRequest"
    default_message = "Malformed trade request."

class StorageFailure(TradeError):
    code = "StorageFailure"
    default_message = "The trade database is busy or unavailable. Please try again."


# ---------------- Value types ----------------
@dataclass(frozen=True)
class CardRef:
    expansion: str
    number: str

    @classmethod
    def parse(cls, expansion: str | None, number: str | None) -> "CardRef":
        exp = normalize_expansion(expansion)
        num = normalize_card_number(number)
        if not exp or not num:
            raise BadRequest("Both an expansion and a card number are required.")
        return cls(exp, num)

    def __str__(self) -> str:
        return f"{self.expansion} #{self.number}"


@dataclass
class Trade:
    trade_id: int
    proposer_id: str
    acceptor_id: Optional[str]
    requested: CardRef
    offered: Optional[CardRef]
    status: str
    confirmed_by: frozenset = field(default_factory=frozenset)
    created_ts: int = 0
    updated_ts: int = 0
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    public_handle: Optional[str] = None
    proposer_handle: Optional[str] = None
    acceptor_handle: Optional[str] = None

    @classmethod
    def from_row(cls, r: dict) -> "Trade":
        confirmed = set()
        if int(r.get("confirm_proposer") or 0):
            confirmed.add(r["proposer_id"])
        if int(r.get("confirm_acceptor") or 0) and r.get("acceptor_id"):
            confirmed.add(r["acceptor_id"])
        offered = None
        if r.get("off_expansion") and r.get("off_card"):
            offered = CardRef(r["off_expansion"], r["off_card"])
        return cls(
            trade_id=int(r["trade_id"]),
            proposer_id=r["proposer_id"],
            acceptor_id=r.get("acceptor_id"),
            requested=CardRef(r["req_expansion"], r["req_card"]),
            offered=offered,
            status=r["status"],
            confirmed_by=frozenset(confirmed),
            created_ts=int(r.get("created_ts") or 0),
            updated_ts=int(r.get("updated_ts") or 0),
            cancelled_by=r.get("cancelled_by"),
            cancel_reason=r.get("cancel_reason"),
            public_handle=r.get("public_handle"),
            proposer_handle=r.get("prop_handle"),
            acceptor_handle=r.get("acc_handle"),
        )

    @property
    def confirmations(self) -> int:
        return len(self.confirmed_by)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def notification_handles(self) -> List[str]:
        return [h for h in (self.proposer_handle, self.acceptor_handle) if h]

    def is_party(self, user_id) -> bool:
        uid = str(user_id)
        return uid == self.proposer_id or (self.acceptor_id is not None and uid == self.acceptor_id)

    def counterparty(self, user_id) -> Optional[str]:
        uid = str(user_id)
        if uid == self.proposer_id:
            return self.acceptor_id
        if uid == self.acceptor_id:
            return self.proposer_id
        return None


class ConfirmOutcome(Enum):
    WAITING_FOR_COUNTERPARTY = "waiting"
    SETTLED = "settled"


@dataclass
class ConfirmResult:
    outcome: ConfirmOutcome
    trade: Trade
    recorded: bool  # False when this party had already confirmed


# ---------------- Button payloads ----------------
PAYLOAD_ACTIONS = ("offer", "confirm", "cancel")
_PAYLOAD_RE = re.compile(r"trade:(offer|confirm|cancel):([1-9][0-9]{0,17})")

def encode_payload(action: str, trade_id: int) -> str:
    if action not in PAYLOAD_ACTIONS:
        raise ValueError(f"unknown trade action {action!r}")
    return f"trade:{action}:{int(trade_id)}"

def parse_payload(custom_id: str | None) -> tuple[str, int]:
    """Validate a button custom_id. Raises BadRequest if it is not well-formed."""
    m = _PAYLOAD_RE.fullmatch(custom_id or "")
    if not m:
        raise BadRequest("That button is not a valid trade action.")
    return m.group(1), int(m.group(2))


# ---------------- Orchestrator ----------------
class TradeOrchestrator:
    def __init__(self, state: AppState, *, retries: int = 3, retry_delay: float = 0.05):
        self.state = state
        self.retries = max(1, int(retries))
        self.retry_delay = retry_delay
        self._mutex = threading.Lock()

    def _run(self, op: str, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run `work` as one transaction; busy/locked errors retry the whole transaction."""
        last_err: Exception | None = None
        for attempt in range(1, self.retries + 1):
            with self._mutex:
                try:
                    with db_tx(self.state) as c:
                        return work(c)
                except TradeError as e:
                    logger.debug("%s rejected: %s (%s)", op, e.code, e.message)
                    raise
                except sqlite3.OperationalError as e:
                    last_err = e
                    logger.warning("%s: attempt %d/%d failed: %s", op, attempt, self.retries, e)
                except sqlite3.Error as e:
                    logger.exception("%s: storage error", op)
                    raise StorageFailure() from e
            if attempt < self.retries:
                time.sleep(self.retry_delay * attempt)
        raise StorageFailure() from last_err

    # ---- reads ----
    def get_trade(self, trade_id: int) -> Optional[Trade]:
        row = db_trade_get(self.state, trade_id)
        return Trade.from_row(row) if row else None

    def open_trade_for(self, user_id) -> Optional[Trade]:
        row = db_trade_get_open_for_user(self.state, user_id)
        return Trade.from_row(row) if row else None

    # ---- phase 1 ----
    def propose(self, proposer_id, expansion: str, card_number: str) -> Trade:
        uid = str(proposer_id)

        def work(c):
            card = CardRef.parse(expansion, card_number)
            if not _lock_try_acquire_with_conn(c, uid):
                raise AlreadyInTrade()
            if not _is_missing_with_conn(c, uid, card.expansion, card.number):
                # rollback releases the lock taken above
                raise NotMissing(f"**{card}** is not on your missing list.")
            trade_id = _trade_insert_with_conn(c, uid, card.expansion, card.number)
            return Trade.from_row(_trade_get_with_conn(c, trade_id))

        trade = self._run("propose", work)
        logger.info("trade #%s proposed by %s for %s", trade.trade_id, uid, trade.requested)
        return trade

    # ---- phase 2 ----
    def match(self, acceptor_id, expansion: str, card_number: str, *,
              proposer_id=None, trade_id: int | None = None) -> Trade:
        """
        Bind an acceptor's offer to a pending request, named either by the
        proposer or by trade id (or both, which must agree).
        """
        acc = str(acceptor_id)

        def work(c):
            if proposer_id is None and trade_id is None:
                raise BadRequest("An offer must name the proposer or the trade.")
            offered = CardRef.parse(expansion, card_number)
            prop = None if proposer_id is None else str(proposer_id)
            if prop is None:
                row = _trade_get_with_conn(c, trade_id)
                if not row or row["status"] != PENDING:
                    raise NoActiveProposal()
                prop = row["proposer_id"]
            if acc == prop:
                raise SelfTrade()
            if not _lock_try_acquire_with_conn(c, acc):
                raise AlreadyInTrade()
            if _is_missing_with_conn(c, acc, offered.expansion, offered.number):
                raise AcceptorMissingCard(f"**{offered}** is on your own missing list.")
            pending = _trade_pending_for_proposer_with_conn(c, prop)
            if not pending or (trade_id is not None and int(pending["trade_id"]) != int(trade_id)):
                raise NoActiveProposal()
            requested = CardRef(pending["req_expansion"], pending["req_card"])
            # settlement only clears the requested entry for the proposer, so any
            # other card they also lack would leave their list out of date
            if offered != requested and _is_missing_with_conn(c, prop, offered.expansion, offered.number):
                raise ProposerMissingOfferedCard()
            if not _trade_set_match_with_conn(c, pending["trade_id"], acc, offered.expansion, offered.number):
                raise NoActiveProposal()
            return Trade.from_row(_trade_get_with_conn(c, pending["trade_id"]))

        trade = self._run("match", work)
        logger.info("trade #%s matched: %s offers %s to %s", trade.trade_id, acc, trade.offered, trade.proposer_id)
        return trade

    # ---- phase 3 ----
    def confirm(self, trade_id: int, user_id) -> ConfirmResult:
        uid = str(user_id)

        def work(c):
            row = _trade_get_with_conn(c, trade_id)
            if not row or row["status"] != ACTIVE:
                raise UnknownTrade()
            trade = Trade.from_row(row)
            if not trade.is_party(uid):
                raise NotAParty()
            column = "confirm_proposer" if uid == trade.proposer_id else "confirm_acceptor"
            recorded = _trade_set_confirm_with_conn(c, trade.trade_id, column)
            trade = Trade.from_row(_trade_get_with_conn(c, trade.trade_id))
            if trade.confirmations < 2:
                return ConfirmResult(ConfirmOutcome.WAITING_FOR_COUNTERPARTY, trade, recorded)

            # settlement: all of it commits together or not at all
            _remove_missing_with_conn(c, trade.proposer_id, trade.requested.expansion, trade.requested.number)
            _remove_missing_with_conn(c, trade.acceptor_id, trade.offered.expansion, trade.offered.number)
            if not _trade_set_status_with_conn(c, trade.trade_id, COMPLETED):
                raise UnknownTrade()
            _lock_release_with_conn(c, trade.proposer_id)
            _lock_release_with_conn(c, trade.acceptor_id)
            return ConfirmResult(ConfirmOutcome.SETTLED, Trade.from_row(_trade_get_with_conn(c, trade.trade_id)), recorded)

        result = self._run("confirm", work)
        if result.outcome is ConfirmOutcome.SETTLED:
            t = result.trade
            logger.info("trade #%s settled: %s got %s, %s gave %s",
                        t.trade_id, t.proposer_id, t.requested, t.acceptor_id, t.offered)
        elif result.recorded:
            logger.info("trade #%s confirmed by %s (%d/2)", trade_id, uid, result.trade.confirmations)
        else:
            logger.debug("trade #%s duplicate confirmation from %s ignored", trade_id, uid)
        return result

    # ---- phase 4 ----
    def cancel(self, trade_id: int, user_id) -> Trade:
        uid = str(user_id)

        def work(c):
            row = _trade_get_with_conn(c, trade_id)
            if not row or row["status"] not in OPEN_STATUSES:
                raise UnknownTrade()
            trade = Trade.from_row(row)
            if not trade.is_party(uid):
                raise NotAParty()
            _trade_set_status_with_conn(c, trade.trade_id, CANCELLED, cancelled_by=uid, cancel_reason="cancelled")
            _lock_release_with_conn(c, trade.proposer_id)
            _lock_release_with_conn(c, trade.acceptor_id)
            return Trade.from_row(_trade_get_with_conn(c, trade.trade_id))

        trade = self._run("cancel", work)
        logger.info("trade #%s cancelled by %s", trade.trade_id, uid)
        return trade

    def expire_stale(self, now: float | None = None) -> List[Trade]:
        """Cancel open trades whose last transition is older than the configured timeout."""
        timeout = int(self.state.trade_timeout_s or 0)
        if timeout <= 0:
            return []
        cutoff = int(now if now is not None else time.time()) - timeout

        def work(c):
            expired = []
            for row in _trade_list_stale_with_conn(c, cutoff):
                if not _trade_set_status_with_conn(c, row["trade_id"], CANCELLED, cancel_reason="expired"):
                    continue
                _lock_release_with_conn(c, row["proposer_id"])
                _lock_release_with_conn(c, row.get("acceptor_id"))
                expired.append(Trade.from_row(_trade_get_with_conn(c, row["trade_id"])))
            return expired

        expired = self._run("expire", work)
        for t in expired:
            logger.info("trade #%s expired after %ss without progress", t.trade_id, timeout)
        return expired
