from __future__ import annotations

import argparse
import contextlib
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path


ROOT = Path(__file__).resolve().parent
PRINT_LOCK = threading.Lock()


def _print(prefix: str, text: str) -> None:
    with PRINT_LOCK:
        print(f"[{prefix}] {text}", flush=True)


def _stream_output(prefix: str, proc: subprocess.Popen[str]) -> None:
    assert proc.stdout is not None
    try:
        for raw_line in proc.stdout:
            line = raw_line.rstrip("\r\n")
            if line:
                _print(prefix, line)
    except Exception as exc:
        _print(prefix, f"(output reader error: {exc})")


def _pick_free_port(host: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def _stop_process(proc: subprocess.Popen[str] | None, *, name: str, timeout: float = 8.0) -> None:
    if proc is None or proc.poll() is not None:
        return
    with contextlib.suppress(Exception):
        if os.name == "nt":
            proc.terminate()
        else:
            os.killpg(os.getpgid(proc.pid), signal.SIGINT)
    try:
        code = proc.wait(timeout=max(0.1, timeout))
        _print("runner", f"{name} exited with code {code}")
        return
    except subprocess.TimeoutExpired:
        pass
    _print("runner", f"{name} did not stop gracefully, forcing shutdown...")
    with contextlib.suppress(Exception):
        if os.name == "nt":
            proc.kill()
        else:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)


def _spawn(name: str, args: list[str], signal_host: str, signal_port: int) -> subprocess.Popen[str]:
    env = os.environ.copy()
    env.setdefault("PYTHONUNBUFFERED", "1")
    env.setdefault("PYTHONIOENCODING", "utf-8")
    # Both sides learn the signal target here, at spawn time.
    env["BOT_SIGNAL_HOST"] = signal_host
    env["BOT_SIGNAL_PORT"] = str(signal_port)

    creationflags = 0
    preexec_fn = None
    if os.name == "nt":
        creationflags = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
    else:
        preexec_fn = os.setsid

    _print("runner", f"starting {name}: {' '.join(args)}")
    return subprocess.Popen(
        args,
        cwd=str(ROOT),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        creationflags=creationflags,
        preexec_fn=preexec_fn,
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the Beholder bot and its channel control API in one terminal with prefixed logs."
    )
    parser.add_argument(
        "--signal-host",
        default=os.getenv("BOT_SIGNAL_HOST", "127.0.0.1"),
        help="Loopback address the bot listens on for recheck signals (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--signal-port",
        type=int,
        default=int(os.getenv("BOT_SIGNAL_PORT", "0") or "0"),
        help="Port for recheck signals; 0 picks a free port (default: BOT_SIGNAL_PORT or 0)",
    )
    args = parser.parse_args()

    signal_port = args.signal_port or _pick_free_port(args.signal_host)
    py = sys.executable
    bot_cmd = [py, "-u", "bot.py"]
    control_cmd = [py, "-u", "control.py"]

    bot_proc: subprocess.Popen[str] | None = None
    control_proc: subprocess.Popen[str] | None = None
    readers: list[threading.Thread] = []

    try:
        bot_proc = _spawn("bot", bot_cmd, args.signal_host, signal_port)
        readers.append(threading.Thread(target=_stream_output, args=("bot", bot_proc), daemon=True))
        readers[-1].start()

        control_proc = _spawn("control", control_cmd, args.signal_host, signal_port)
        readers.append(threading.Thread(target=_stream_output, args=("control", control_proc), daemon=True))
        readers[-1].start()

        while True:
            bot_code = bot_proc.poll()
            control_code = control_proc.poll()
            if bot_code is not None:
                _print("runner", f"bot exited with code {bot_code}, stopping control API...")
                _stop_process(control_proc, name="control", timeout=10.0)
                return bot_code or 0
            if control_code is not None:
                _print("runner", f"control API exited with code {control_code}, stopping bot...")
                _stop_process(bot_proc, name="bot", timeout=10.0)
                return control_code or 0
            time.sleep(0.25)
    except KeyboardInterrupt:
        _print("runner", "Ctrl+C received, stopping control API and bot...")
        with contextlib.suppress(KeyboardInterrupt):
            _stop_process(control_proc, name="control", timeout=12.0)
        with contextlib.suppress(KeyboardInterrupt):
            _stop_process(bot_proc, name="bot", timeout=12.0)
        return 130
    finally:
        with contextlib.suppress(KeyboardInterrupt):
            _stop_process(control_proc, name="control", timeout=2.0)
        with contextlib.suppress(KeyboardInterrupt):
            _stop_process(bot_proc, name="bot", timeout=2.0)
        for t in readers:
            t.join(timeout=0.5)


if __name__ == "__main__":
    raise SystemExit(main())
