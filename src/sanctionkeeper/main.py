"""
Sanctionkeeper Bot
==================

A Discord bot that issues temporary mutes and timed role changes and
reverses each of them exactly once when it expires, even across restarts.
"""

import os
import sys
from pathlib import Path


def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. SANCTIONKEEPER_HOME environment variable, if set.
    2. If running in a frozen/compiled context (e.g., PyInstaller, Nuitka), use the executable's directory.
    3. Otherwise, assume running from source and use the directory above ``src/``.
    """
    if env_home := os.getenv("SANCTIONKEEPER_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]


BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
import discord
from dotenv import load_dotenv

from sanctionkeeper.cogs import sanction_cmds, scheduler_cog
from sanctionkeeper.configuration.app_configuration import app_config
from sanctionkeeper.database.db_connection import ConnectionManager
from sanctionkeeper.database.db_schema import SchemaManager
from sanctionkeeper.effects.discord_effects import DiscordEffectApplier
from sanctionkeeper.services.sanction_service import SanctionService
from sanctionkeeper.util.logger import get_logger, handle_exception


logger = get_logger("main")


def load_environment() -> str:
    """Load environment variables and return the Discord bot token.

    Returns
    -------
    str
        Discord bot token extracted from the loaded environment.

    Raises
    ------
    SystemExit
        If the required ``DISCORD_BOT_TOKEN`` variable is missing.
    """
    load_dotenv(dotenv_path=BASE_DIR / ".env")
    token = os.getenv("DISCORD_BOT_TOKEN")
    if not token:
        logger.critical("'DISCORD_BOT_TOKEN' environment variable not set. Bot cannot start.")
        sys.exit(1)
    return token


def build_intents() -> discord.Intents:
    """Construct the Discord intents the sanction commands need.

    Members are required to resolve and edit the roles of sanctioned users;
    voice states to disconnect muted members.
    """
    intents = discord.Intents.default()
    intents.guilds = True
    intents.members = True
    intents.voice_states = True
    return intents


async def open_database(path: Path) -> ConnectionManager:
    """Open the sanction database and make sure the schema exists."""
    connection = ConnectionManager()
    await connection.open(path)
    await SchemaManager.initialize_schema(connection.connection)
    return connection


def create_bot(service_factory) -> tuple[discord.Bot, SanctionService]:
    """Instantiate the Discord bot, the sanction service and register all cogs.

    Parameters
    ----------
    service_factory:
        Callable taking the bot's effect applier and returning the service.
    """
    bot = discord.Bot(intents=build_intents())
    service = service_factory(DiscordEffectApplier(bot))
    scheduler_cog.setup(bot, service)
    sanction_cmds.setup(bot, service)
    logger.info("All cogs loaded successfully.")
    return bot, service


async def run_bot_session(token: str) -> int:
    """Open storage, run the bot until it stops, then shut everything down."""
    connection = await open_database(app_config.database_path)
    bot, service = create_bot(
        lambda effects: SanctionService(connection, effects, app_config)
    )
    exit_code = 0

    try:
        logger.info("Attempting to connect to Discord…")
        await bot.start(token)
    except asyncio.CancelledError:
        logger.info("Bot start cancelled; proceeding to shutdown")
    except Exception as exc:
        logger.critical("Discord bot runtime error: %s", exc)
        exit_code = 1
    finally:
        await service.shutdown()
        if not bot.is_closed():
            await bot.close()
        await connection.close()
        logger.info("Shutdown complete.")

    return exit_code


def main() -> int:
    """Entry point used by the ``sanctionkeeper`` console script."""
    sys.excepthook = handle_exception
    token = load_environment()
    try:
        return asyncio.run(run_bot_session(token))
    except KeyboardInterrupt:
        logger.info("Interrupted by user; exiting.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
