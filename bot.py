import logging
import os
from typing import Optional

import discord
from discord.ext import commands
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("CASINOBOT_LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("casinobot")

from casinobot.commands import CasinoManager, setup_casino_mode  # noqa: E402
from casinobot.settings import CasinoSettings  # noqa: E402

DISCORD_TOKEN = os.getenv("DISCORD_TOKEN")
if not DISCORD_TOKEN:
    raise RuntimeError("Missing DISCORD_TOKEN. Set it in your environment or .env file.")

SETTINGS = CasinoSettings.from_env()

intents = discord.Intents.default()
intents.message_content = True
intents.members = True
intents.reactions = True


class CasinoBot(commands.Bot):
    manager: Optional[CasinoManager] = None

    async def setup_hook(self) -> None:
        self.manager = setup_casino_mode(self, SETTINGS)
        self.manager.start()
        logger.info("Casino ready with database %s", SETTINGS.db_path)

    async def close(self) -> None:
        if self.manager is not None:
            await self.manager.close()
        await super().close()


bot = CasinoBot(command_prefix=SETTINGS.prefix, intents=intents)


@bot.event
async def on_ready():
    logger.info("Logged in as %s (%s)", bot.user, bot.user.id if bot.user else "?")


@bot.event
async def on_command_error(ctx: commands.Context, error: commands.CommandError):
    if isinstance(error, commands.CommandNotFound):
        return
    if isinstance(error, (commands.BadArgument, commands.MissingRequiredArgument)):
        await ctx.reply(f"Invalid arguments. {error}", mention_author=False)
        return
    logger.error("Command %s failed", ctx.command, exc_info=error)


def main():
    bot.run(DISCORD_TOKEN)


if __name__ == "__main__":
    main()
