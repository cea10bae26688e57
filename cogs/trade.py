# cogs/trade.py
import asyncio
import logging
import os
from typing import Optional

import discord
from discord.ext import commands
from discord import app_commands

from core.state import AppState
from core.db import db_user_ensure, db_trade_store_handles
from core.trading import (
    TradeOrchestrator, TradeError, Trade, ConfirmOutcome, PENDING, parse_payload,
)
from core.notify import (
    DiscordDispatcher, TradeNotifier, build_action_view, offer_actions, fmt_request,
)
from cogs.collection import ensure_allowed_channel

logger = logging.getLogger(__name__)

# ---- Guild scoping ----
GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD_IDS = [GUILD_ID] if GUILD_ID else []  # empty = global commands

SWEEP_SECONDS = int(os.getenv("TRADE_SWEEP_SECONDS", "60") or 60)


def _trade_status_line(t: Trade) -> str:
    if t.status == PENDING:
        return f"Trade #{t.trade_id}: <@{t.proposer_id}> is waiting for an offer on **{t.requested}**."
    return (f"Trade #{t.trade_id}: <@{t.proposer_id}> gets **{t.offered}** from <@{t.acceptor_id}> "
            f"(requested **{t.requested}**). Confirmations: {t.confirmations}/2.")


# --------------- Offer UI (non-binding intent step) ---------------
class OfferModal(discord.ui.Modal, title="Offer a card"):
    expansion = discord.ui.TextInput(label="Expansion", max_length=100)
    card = discord.ui.TextInput(label="Card number", max_length=20)

    def __init__(self, cog: "TradeCog", trade: Trade):
        super().__init__(timeout=300)
        self.cog = cog
        self.trade_id = trade.trade_id
        self.expansion.default = trade.requested.expansion
        self.card.default = trade.requested.number

    async def on_submit(self, interaction: discord.Interaction):
        await self.cog.submit_offer(
            interaction, str(self.expansion.value), str(self.card.value), trade_id=self.trade_id
        )


# --------------- Cog ---------------
class TradeCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state: AppState = self.bot.state
        self.orch = TradeOrchestrator(self.state)
        self.notifier = TradeNotifier(self.state, DiscordDispatcher(bot))
        self._task: Optional[asyncio.Task] = None

    async def cog_load(self):
        if self.state.trade_timeout_s > 0:
            self._task = asyncio.create_task(self._expiry_loop(), name="trade-expiry")

    async def cog_unload(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _expiry_loop(self):
        while True:
            try:
                await asyncio.sleep(SWEEP_SECONDS)
                expired = await asyncio.to_thread(self.orch.expire_stale)
                for t in expired:
                    await self.notifier.announce_cancelled(t)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("trade expiry sweep failed")
                await asyncio.sleep(5)

    async def _reply_error(self, interaction: discord.Interaction, err: TradeError):
        if interaction.response.is_done():
            await interaction.followup.send(f"❌ {err.message}", ephemeral=True)
        else:
            await interaction.response.send_message(f"❌ {err.message}", ephemeral=True)

    # ---------- Protocol phases ----------
    async def submit_request(self, interaction: discord.Interaction, expansion: str, card: str):
        db_user_ensure(self.state, interaction.user.id, interaction.user.name)
        try:
            trade = await asyncio.to_thread(self.orch.propose, interaction.user.id, expansion, card)
        except TradeError as e:
            await self._reply_error(interaction, e)
            return
        await interaction.response.send_message(
            content=fmt_request(trade), view=build_action_view(offer_actions(trade.trade_id))
        )
        msg = await interaction.original_response()
        db_trade_store_handles(self.state, trade.trade_id, public=f"{msg.channel.id}:{msg.id}")
        # an offer may have landed before the handle existed
        await self.notifier.refresh_public(trade.trade_id)

    async def submit_offer(self, interaction: discord.Interaction, expansion: str, card: str, *,
                           proposer_id=None, trade_id: int | None = None):
        db_user_ensure(self.state, interaction.user.id, interaction.user.name)
        try:
            trade = await asyncio.to_thread(
                self.orch.match, interaction.user.id, expansion, card,
                proposer_id=proposer_id, trade_id=trade_id,
            )
        except TradeError as e:
            await self._reply_error(interaction, e)
            return
        await interaction.response.send_message(
            f"📨 Offer sent for trade **#{trade.trade_id}**. Check your DMs to confirm.", ephemeral=True
        )
        await self.notifier.announce_match(trade)

    async def submit_confirm(self, interaction: discord.Interaction, trade_id: int):
        try:
            result = await asyncio.to_thread(self.orch.confirm, trade_id, interaction.user.id)
        except TradeError as e:
            await self._reply_error(interaction, e)
            return
        if result.outcome is ConfirmOutcome.SETTLED:
            await interaction.response.send_message("✅ Trade executed.", ephemeral=True)
            await self.notifier.announce_settled(result.trade)
        elif result.recorded:
            await interaction.response.send_message("✅ Confirmation recorded. Waiting for the other player.", ephemeral=True)
        else:
            await interaction.response.send_message("ℹ️ You already confirmed. Waiting for the other player.", ephemeral=True)

    async def submit_cancel(self, interaction: discord.Interaction, trade_id: int):
        try:
            trade = await asyncio.to_thread(self.orch.cancel, trade_id, interaction.user.id)
        except TradeError as e:
            await self._reply_error(interaction, e)
            return
        await interaction.response.send_message("🛑 Trade cancelled.", ephemeral=True)
        await self.notifier.announce_cancelled(trade)

    # ---------- Buttons ----------
    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction):
        if interaction.type is not discord.InteractionType.component:
            return
        custom_id = (interaction.data or {}).get("custom_id") or ""
        if not custom_id.startswith("trade:"):
            return
        try:
            action, trade_id = parse_payload(custom_id)
        except TradeError as e:
            await self._reply_error(interaction, e)
            return

        if action == "offer":
            trade = await asyncio.to_thread(self.orch.get_trade, trade_id)
            if not trade or trade.status != PENDING:
                await interaction.response.send_message("❌ That request has already been answered or closed.", ephemeral=True)
                return
            await interaction.response.send_modal(OfferModal(self, trade))
        elif action == "confirm":
            await self.submit_confirm(interaction, trade_id)
        else:
            await self.submit_cancel(interaction, trade_id)

    # ---------- Commands ----------
    @app_commands.command(name="trade_request", description="Ask the channel for a card from your missing list")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(expansion="Expansion of the card you need", card="Card number you need")
    async def trade_request(self, interaction: discord.Interaction, expansion: str, card: str):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        await self.submit_request(interaction, expansion, card)

    @app_commands.command(name="trade_offer", description="Offer a card to a player's open trade request")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(
        user="Player whose request you are answering",
        expansion="Expansion of the card you give",
        card="Card number you give",
    )
    async def trade_offer(self, interaction: discord.Interaction, user: discord.User, expansion: str, card: str):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        if user.bot:
            await interaction.response.send_message("❌ You cannot trade with bots.", ephemeral=True)
            return
        await self.submit_offer(interaction, expansion, card, proposer_id=user.id)

    @app_commands.command(name="trade_confirm", description="Confirm your active trade")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(trade_id="Trade ID (optional). If omitted, confirms your open trade.")
    async def trade_confirm(self, interaction: discord.Interaction, trade_id: Optional[int] = None):
        tid = trade_id or await self._open_trade_id(interaction.user.id)
        if not tid:
            await interaction.response.send_message("No open trade found.", ephemeral=True)
            return
        await self.submit_confirm(interaction, tid)

    @app_commands.command(name="trade_cancel", description="Cancel your open trade (by ID or your latest)")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(trade_id="Trade ID (optional). If omitted, cancels your open trade.")
    async def trade_cancel(self, interaction: discord.Interaction, trade_id: Optional[int] = None):
        tid = trade_id or await self._open_trade_id(interaction.user.id)
        if not tid:
            await interaction.response.send_message("No open trade found.", ephemeral=True)
            return
        await self.submit_cancel(interaction, tid)

    @app_commands.command(name="trade_status", description="Show your open trade")
    @app_commands.guilds(*GUILD_IDS)
    async def trade_status(self, interaction: discord.Interaction):
        trade = await asyncio.to_thread(self.orch.open_trade_for, interaction.user.id)
        if not trade:
            await interaction.response.send_message("You have no open trade.", ephemeral=True)
            return
        await interaction.response.send_message(_trade_status_line(trade), ephemeral=True)

    async def _open_trade_id(self, user_id) -> Optional[int]:
        trade = await asyncio.to_thread(self.orch.open_trade_for, user_id)
        return trade.trade_id if trade else None


async def setup(bot: commands.Bot):
    await bot.add_cog(TradeCog(bot))
