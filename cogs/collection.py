# cogs/collection.py
import os, discord
from collections import defaultdict
from typing import Dict, List, Optional
from discord.ext import commands
from discord import app_commands

from core.state import AppState
from core.util_norm import normalize_expansion, normalize_card_number
from core.db import (
    db_user_ensure, db_expansion_upsert, db_expansion_get, db_expansion_list,
    db_missing_add, db_missing_remove, db_missing_list,
)

GUILD_ID = int(os.getenv("GUILD_ID", "0") or 0)
GUILD_IDS = [GUILD_ID] if GUILD_ID else []  # empty = global commands


async def ensure_allowed_channel(interaction: discord.Interaction, state: AppState) -> bool:
    """Answer with a pointer to the designated channel and return False when used elsewhere."""
    allowed = state.channel_id
    if not allowed or interaction.channel_id == allowed:
        return True
    await interaction.response.send_message(
        f"Please use the bot in the designated channel: <#{allowed}>", ephemeral=True
    )
    return False


def card_number_in_range(number: str, total_cards: int) -> bool:
    # non-numeric numbers (promos, "TG05", "²") are not range-checked
    if not number.isdecimal():
        return True
    return 1 <= int(number) <= int(total_cards)


def group_missing(rows: List[dict]) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = defaultdict(list)
    for r in rows:
        out[r["expansion"]].append(r["card_number"])
    return dict(out)


class Collection(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.state: AppState = self.bot.state

    async def ac_expansion(self, interaction: discord.Interaction, current: str):
        cur = (current or "").lower()
        choices: List[app_commands.Choice[str]] = []
        for exp in db_expansion_list(self.state):
            if cur and cur not in exp["name"].lower():
                continue
            choices.append(app_commands.Choice(name=exp["name"][:100], value=exp["name"]))
            if len(choices) >= 25:
                break
        return choices

    @app_commands.command(name="start", description="Register with the trading bot")
    @app_commands.guilds(*GUILD_IDS)
    async def start(self, interaction: discord.Interaction):
        db_user_ensure(self.state, interaction.user.id, interaction.user.name)
        await interaction.response.send_message(
            "Welcome to the card trading bot! Add the cards you lack with `/add_missing`, "
            "then ask for one with `/trade_request`.",
            ephemeral=True,
        )

    @app_commands.command(name="add_expansion", description="(Admin) Register an expansion and its card count")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.default_permissions(administrator=True)
    @app_commands.checks.has_permissions(administrator=True)
    @app_commands.describe(name="Expansion name", total_cards="Number of cards in the expansion")
    async def add_expansion(self, interaction: discord.Interaction, name: str,
                            total_cards: app_commands.Range[int, 1, 10_000]):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        if not normalize_expansion(name):
            await interaction.response.send_message("Usage: /add_expansion <name> <total cards>", ephemeral=True)
            return
        exp = db_expansion_upsert(self.state, name, total_cards)
        await interaction.response.send_message(f"Expansion **{exp['name']}** added with {exp['total_cards']} cards.")

    @app_commands.command(name="expansions", description="List registered expansions")
    @app_commands.guilds(*GUILD_IDS)
    async def expansions(self, interaction: discord.Interaction):
        rows = db_expansion_list(self.state)
        if not rows:
            await interaction.response.send_message("No expansions registered yet.", ephemeral=True)
            return
        lines = [f"• **{r['name']}** — {r['total_cards']} cards" for r in rows]
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @app_commands.command(name="add_missing", description="Add a card to your missing list")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(expansion="Expansion name", card="Card number, e.g. 007")
    @app_commands.autocomplete(expansion=ac_expansion)
    async def add_missing(self, interaction: discord.Interaction, expansion: str, card: str):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        exp_name, number = normalize_expansion(expansion), normalize_card_number(card)
        if not exp_name or not number:
            await interaction.response.send_message("Usage: /add_missing <expansion> <card number>", ephemeral=True)
            return
        meta = db_expansion_get(self.state, exp_name)
        if meta and not card_number_in_range(number, meta["total_cards"]):
            await interaction.response.send_message(
                f"❌ **{exp_name}** only has {meta['total_cards']} cards.", ephemeral=True
            )
            return
        db_user_ensure(self.state, interaction.user.id, interaction.user.name)
        added = db_missing_add(self.state, interaction.user.id, exp_name, number)
        if added:
            msg = f"Card {number} from expansion {exp_name} added to your missing list."
        else:
            msg = f"Card {number} from expansion {exp_name} is already on your missing list."
        await interaction.response.send_message(msg, ephemeral=True)

    @app_commands.command(name="remove_missing", description="Remove a card from your missing list")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(expansion="Expansion name", card="Card number")
    @app_commands.autocomplete(expansion=ac_expansion)
    async def remove_missing(self, interaction: discord.Interaction, expansion: str, card: str):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        removed = db_missing_remove(self.state, interaction.user.id, expansion, card)
        if removed:
            msg = f"Card {normalize_card_number(card)} removed from your missing list."
        else:
            msg = "ℹ️ That card isn't on your missing list."
        await interaction.response.send_message(msg, ephemeral=True)

    @app_commands.command(name="missing", description="Show a player's missing cards")
    @app_commands.guilds(*GUILD_IDS)
    @app_commands.describe(expansion="(Optional) Only this expansion", user="(Optional) Whose list; defaults to you")
    @app_commands.autocomplete(expansion=ac_expansion)
    async def missing(self, interaction: discord.Interaction, expansion: Optional[str] = None,
                      user: Optional[discord.User] = None):
        if not await ensure_allowed_channel(interaction, self.state):
            return
        target = user or interaction.user
        grouped = group_missing(db_missing_list(self.state, target.id, expansion))
        if not grouped:
            await interaction.response.send_message("No missing cards recorded.", ephemeral=True)
            return
        embed = discord.Embed(title=f"{target.display_name}'s missing cards", color=0x2b6cb0)
        for exp_name, numbers in list(grouped.items())[:25]:
            embed.add_field(name=exp_name, value=", ".join(numbers)[:1024], inline=False)
        await interaction.response.send_message(embed=embed)


async def setup(bot: commands.Bot):
    await bot.add_cog(Collection(bot))
