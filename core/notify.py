import logging
from typing import Iterable, Optional, Sequence, Tuple

import discord

from core.state import AppState
from core.db import db_trade_get, db_trade_store_handles
from core.trading import Trade, PENDING, ACTIVE, COMPLETED, CANCELLED, encode_payload

logger = logging.getLogger(__name__)

# (label, custom_id, style)
Action = Tuple[str, str, discord.ButtonStyle]


def build_action_view(actions: Iterable[Action]) -> Optional[discord.ui.View]:
    """
    Buttons carry only a custom_id; clicks are routed by the trade cog's
    on_interaction listener so they keep working across restarts.
    """
    actions = list(actions or [])
    if not actions:
        return None
    view = discord.ui.View(timeout=None)
    for label, custom_id, style in actions:
        view.add_item(discord.ui.Button(label=label, custom_id=custom_id, style=style))
    return view


def _split_handle(handle: str) -> Tuple[int, int]:
    chan, _, msg = (handle or "").partition(":")
    return int(chan), int(msg)


class DiscordDispatcher:
    """
    Delivers trade messages. Contract used by TradeNotifier:
      notify(user_id, content, actions) -> handle | None
      edit_message(handle, content) -> bool
    A handle is "<channel_id>:<message_id>".
    """

    def __init__(self, client: discord.Client):
        self.client = client

    async def notify(self, user_id, content: str, actions: Sequence[Action] = ()) -> Optional[str]:
        try:
            uid = int(user_id)
            user = self.client.get_user(uid) or await self.client.fetch_user(uid)
            view = build_action_view(actions)
            if view is not None:
                msg = await user.send(content, view=view)
            else:
                msg = await user.send(content)
        except (discord.HTTPException, ValueError) as e:
            logger.warning("could not DM user %s: %s", user_id, e)
            return None
        return f"{msg.channel.id}:{msg.id}"

    async def edit_message(self, handle: str, content: str) -> bool:
        try:
            chan_id, msg_id = _split_handle(handle)
            channel = self.client.get_channel(chan_id) or await self.client.fetch_channel(chan_id)
            await channel.get_partial_message(msg_id).edit(content=content, view=None)
        except (discord.HTTPException, ValueError, AttributeError) as e:
            logger.warning("could not edit message %s: %s", handle, e)
            return False
        return True


# ---------------- Message text ----------------
def _mention(user_id) -> str:
    return f"<@{user_id}>" if user_id else "someone"

def fmt_request(t: Trade) -> str:
    return (f"🔎 {_mention(t.proposer_id)} is looking for **{t.requested}** (trade #{t.trade_id}).\n"
            f"Have a spare? Press **Offer** or use `/trade_offer`.")

def fmt_request_matched(t: Trade) -> str:
    return f"🤝 Trade #{t.trade_id}: {_mention(t.acceptor_id)} answered {_mention(t.proposer_id)}'s request for **{t.requested}**."

def fmt_match_for(t: Trade, user_id) -> str:
    other = t.counterparty(user_id)
    if str(user_id) == t.proposer_id:
        deal = f"{_mention(other)} offers **{t.offered}** for your request **{t.requested}**."
    else:
        deal = f"You offer **{t.offered}** to {_mention(other)}, who asked for **{t.requested}**."
    return f"📦 **Trade #{t.trade_id}**\n{deal}\nBoth of you must press **Confirm** to complete the swap."

def fmt_settled_for(t: Trade, user_id) -> str:
    if str(user_id) == t.proposer_id:
        got = f"You received **{t.offered}** from {_mention(t.acceptor_id)}; **{t.requested}** is off your missing list."
    else:
        got = f"You traded **{t.offered}** to {_mention(t.proposer_id)}."
    return f"✅ **Trade #{t.trade_id} completed.**\n{got}"

def fmt_cancelled(t: Trade) -> str:
    if t.cancel_reason == "expired":
        why = "expired without being completed"
    elif t.cancelled_by:
        why = f"was cancelled by {_mention(t.cancelled_by)}"
    else:
        why = "was cancelled"
    return f"🛑 Trade #{t.trade_id} for **{t.requested}** {why}."

def fmt_public_terminal(t: Trade) -> str:
    if t.status == COMPLETED:
        return f"✅ Trade #{t.trade_id} completed: {_mention(t.proposer_id)} ⇄ {_mention(t.acceptor_id)} (**{t.requested}**)."
    return fmt_cancelled(t)

def confirm_actions(trade_id: int) -> list[Action]:
    return [
        ("Confirm", encode_payload("confirm", trade_id), discord.ButtonStyle.success),
        ("Cancel", encode_payload("cancel", trade_id), discord.ButtonStyle.danger),
    ]

def offer_actions(trade_id: int) -> list[Action]:
    return [("Offer", encode_payload("offer", trade_id), discord.ButtonStyle.primary)]


# ---------------- Glue ----------------
class TradeNotifier:
    """
    Turns committed trade transitions into messages. Delivery failures are
    logged and never undo a transition that has already been committed.
    """

    def __init__(self, state: AppState, dispatcher):
        self.state = state
        self.dispatcher = dispatcher

    async def _edit(self, handle: Optional[str], content: str) -> bool:
        if not handle:
            return False
        try:
            return bool(await self.dispatcher.edit_message(handle, content))
        except Exception:
            logger.exception("dispatcher edit failed for %s", handle)
            return False

    async def _notify(self, user_id, content: str, actions) -> Optional[str]:
        try:
            return await self.dispatcher.notify(user_id, content, actions)
        except Exception:
            logger.exception("dispatcher notify failed for user %s", user_id)
            return None

    async def announce_match(self, trade: Trade) -> Trade:
        actions = confirm_actions(trade.trade_id)
        prop_handle = await self._notify(trade.proposer_id, fmt_match_for(trade, trade.proposer_id), actions)
        acc_handle = await self._notify(trade.acceptor_id, fmt_match_for(trade, trade.acceptor_id), actions)
        db_trade_store_handles(self.state, trade.trade_id, proposer=prop_handle, acceptor=acc_handle)

        # the trade may have been settled or cancelled while the DMs were in flight,
        # and the public handle may have been stored after `trade` was read
        latest = _reload(self.state, trade.trade_id) or trade
        if latest.status == COMPLETED:
            await self.announce_settled(latest)
        elif latest.status == CANCELLED:
            await self.announce_cancelled(latest)
        else:
            await self._edit(latest.public_handle, fmt_request_matched(latest))
        return latest

    async def refresh_public(self, trade_id: int) -> Optional[Trade]:
        """Bring the public request message in line with a trade that moved on before its handle was stored."""
        latest = _reload(self.state, trade_id)
        if latest is None or latest.status == PENDING:
            return latest
        if latest.status == ACTIVE:
            await self._edit(latest.public_handle, fmt_request_matched(latest))
        else:
            await self._edit(latest.public_handle, fmt_public_terminal(latest))
        return latest

    async def announce_settled(self, trade: Trade):
        await self._edit(trade.proposer_handle, fmt_settled_for(trade, trade.proposer_id))
        await self._edit(trade.acceptor_handle, fmt_settled_for(trade, trade.acceptor_id))
        await self._edit(trade.public_handle, fmt_public_terminal(trade))

    async def announce_cancelled(self, trade: Trade):
        text = fmt_cancelled(trade)
        for handle in (trade.proposer_handle, trade.acceptor_handle, trade.public_handle):
            await self._edit(handle, text)


def _reload(state: AppState, trade_id: int) -> Optional[Trade]:
    row = db_trade_get(state, trade_id)
    return Trade.from_row(row) if row else None
