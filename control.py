import sys

from beholder_bot.control.app import run


if __name__ == "__main__":
    try:
        run()
    except ValueError as exc:
        print(f"Control API config error: {exc}", file=sys.stderr)
        print("Set API_KEY (and BOT_SIGNAL_PORT to reach a running bot) in .env.", file=sys.stderr)
        raise SystemExit(2)
