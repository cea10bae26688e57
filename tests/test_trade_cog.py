"""Button routing through TradeCog.on_interaction, driven with stand-in interactions."""

from types import SimpleNamespace

import discord
import pytest

from cogs.trade import TradeCog
from core.db import db_locked_users
from core.trading import ACTIVE


class FakeResponse:
    def __init__(self):
        self.sent = []
        self.modals = []

    def is_done(self):
        return bool(self.sent or self.modals)

    async def send_message(self, content=None, **kwargs):
        self.sent.append((content, kwargs))

    async def send_modal(self, modal):
        self.modals.append(modal)


def _click(custom_id, user_id="bob"):
    return SimpleNamespace(
        type=discord.InteractionType.component,
        data={"custom_id": custom_id},
        user=SimpleNamespace(id=user_id, name=user_id),
        response=FakeResponse(),
        followup=FakeResponse(),
    )


@pytest.fixture
def cog(orch):
    c = TradeCog(SimpleNamespace(state=orch.state))
    c.orch = orch
    return c


@pytest.mark.asyncio
@pytest.mark.parametrize("custom_id", [
    "trade:confirm:abc",
    "trade:confirm:0",
    "trade:confirm:",
    "trade:steal:1",
    "trade:confirm:1:2",
])
async def test_malformed_button_is_rejected_without_state_change(cog, orch, alice_needs_007, custom_id):
    trade = orch.propose("alice", "SetA", "007")
    trade = orch.match("bob", "SetA", "007", trade_id=trade.trade_id)

    click = _click(custom_id)
    await cog.on_interaction(click)

    assert len(click.response.sent) == 1
    content, kwargs = click.response.sent[0]
    assert "not a valid trade action" in content
    assert kwargs.get("ephemeral") is True
    after = orch.get_trade(trade.trade_id)
    assert after.status == ACTIVE
    assert after.confirmations == 0
    assert set(db_locked_users(alice_needs_007)) == {"alice", "bob"}


@pytest.mark.asyncio
async def test_foreign_custom_ids_are_ignored(cog, alice_needs_007):
    click = _click("shop:buy:1")
    await cog.on_interaction(click)
    assert click.response.sent == []


@pytest.mark.asyncio
async def test_confirm_button_records_confirmation(cog, orch, alice_needs_007):
    trade = orch.propose("alice", "SetA", "007")
    trade = orch.match("bob", "SetA", "007", trade_id=trade.trade_id)

    click = _click(f"trade:confirm:{trade.trade_id}")
    await cog.on_interaction(click)

    assert "Confirmation recorded" in click.response.sent[0][0]
    assert orch.get_trade(trade.trade_id).confirmed_by == frozenset({"bob"})


@pytest.mark.asyncio
async def test_offer_button_on_answered_request(cog, orch, alice_needs_007):
    trade = orch.propose("alice", "SetA", "007")
    orch.match("bob", "SetA", "007", trade_id=trade.trade_id)

    click = _click(f"trade:offer:{trade.trade_id}", user_id="carol")
    await cog.on_interaction(click)

    assert click.response.modals == []
    assert "already been answered" in click.response.sent[0][0]
