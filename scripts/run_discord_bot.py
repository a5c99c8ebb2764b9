r"""
Run the relaybot Discord bot.

Requires: DISCORD_BOT_TOKEN and LLM_API_KEY in .env
Create a bot at https://discord.com/developers/applications
(enable the Message Content intent on the Bot tab).

Run: python scripts/run_discord_bot.py

Usage:
- DM the bot, or @mention it in a channel once a master has sent !enable
- !info shows the chat's settings; !debug 10 echoes action logs for 10 minutes
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

_root = Path(__file__).resolve().parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))
os.chdir(_root)

from dotenv import load_dotenv

load_dotenv(_root / ".env", override=True)


def _setup_logging() -> None:
    log_dir = _root / "logs" / "system"
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, os.environ.get("RELAYBOT_LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(
                log_dir / f"{datetime.now().strftime('%Y-%m-%d')}.log", encoding="utf-8"
            ),
        ],
    )
    logging.getLogger("discord").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


if __name__ == "__main__":
    from relaybot.service.relay_service import RelayService

    token = os.environ.get("DISCORD_BOT_TOKEN")
    if not token:
        print("ERROR: DISCORD_BOT_TOKEN not set.")
        print("1. Create app at https://discord.com/developers/applications")
        print("2. Bot tab -> Add Bot, enable Message Content intent")
        print("3. Copy token, add to .env: DISCORD_BOT_TOKEN=your_token")
        sys.exit(1)

    _setup_logging()
    print("=" * 60)
    print("relaybot Discord bot starting...")
    print("A master must send !enable in a chat before the bot answers there")
    print("=" * 60)

    try:
        RelayService().start(token)
    except KeyboardInterrupt:
        print("\nStopped.")
