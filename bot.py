# bot.py
import os, logging
import discord
from discord.ext import commands
from dotenv import load_dotenv
from pathlib import Path

from core.state import AppState
from core.db import db_init, db_init_trades

load_dotenv()
TOKEN      = os.getenv("DISCORD_TOKEN")
GUILD_ID   = int(os.getenv("GUILD_ID", "0") or 0)
CHANNEL_ID = int(os.getenv("CHANNEL_ID", "0") or 0)
TRADE_TIMEOUT_MINUTES = int(os.getenv("TRADE_TIMEOUT_MINUTES", "1440") or 0)
LOG_LEVEL  = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG_EVENTS = os.getenv("ENV") == "debug"

BASE_DIR = Path(__file__).resolve().parent
DB_PATH  = os.getenv("DB_PATH", "collections.sqlite3")

# make relative paths project-relative
if not os.path.isabs(DB_PATH):
    DB_PATH = str((BASE_DIR / DB_PATH).resolve())

log = logging.getLogger("bot")

intents = discord.Intents.default()
bot = commands.Bot(command_prefix="!", intents=intents)
tree = bot.tree

bot.state = AppState(
    db_path=DB_PATH,
    channel_id=CHANNEL_ID or None,
    trade_timeout_s=max(0, TRADE_TIMEOUT_MINUTES) * 60,
)

COGS = ["cogs.collection", "cogs.trade"]

@bot.event
async def setup_hook():
    # schema must exist before the trade cog starts its expiry loop
    db_init(bot.state)
    db_init_trades(bot.state)

    for ext in COGS:
        try:
            await bot.load_extension(ext)
            print(f"[cogs] loaded {ext}")
        except Exception as e:
            print(f"[cogs] FAILED {ext}: {e}")

    if GUILD_ID:
        guild = discord.Object(id=GUILD_ID)
        await tree.sync(guild=guild)
        print(f"[sync] slash commands synced to guild {GUILD_ID}")
    else:
        await tree.sync()
        print("[sync] slash commands globally synced (may take a while)")

@bot.event
async def on_ready():
    print("In guilds:", [g.id for g in bot.guilds])
    print(f"Logged in as {bot.user} (ID: {bot.user.id})")

if DEBUG_EVENTS:
    @bot.event
    async def on_interaction(interaction: discord.Interaction):
        log.debug("interaction from %s in %s: %s", interaction.user.id, interaction.channel_id, interaction.data)

if __name__ == "__main__":
    if not TOKEN:
        raise SystemExit("DISCORD_TOKEN missing in .env")
    level = logging.DEBUG if DEBUG_EVENTS else getattr(logging, LOG_LEVEL, logging.INFO)
    bot.run(TOKEN, log_level=level, root_logger=True)
