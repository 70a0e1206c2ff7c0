#!/usr/bin/env python3
"""
Stand-in for the node daemon. Accepts the daemon's flags and mimics the
parts of its behaviour the harness relies on: writing the token file,
serving the API and metrics ports, syncing after a delay and reacting to
SIGTERM.
"""
from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import threading
import time
import tomllib
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path

VALUE_FLAGS = {"--chain", "--encrypt-keystore", "--log-dir", "--save-token", "--import-snapshot", "--config"}


def _parse_args(argv: list[str]) -> dict[str, str | bool]:
    out: dict[str, str | bool] = {}
    it = iter(argv)
    for a in it:
        if "=" in a and a.startswith("--"):
            key, value = a.split("=", 1)
            out[key] = value
        elif a in VALUE_FLAGS:
            out[a] = next(it, "")
        else:
            out[a] = True
    return out


def _state_dir(args: dict[str, str | bool]) -> Path:
    env_dir = os.environ.get("FAKE_NODE_STATE_DIR")
    if env_dir:
        path = Path(env_dir)
    else:
        path = Path(str(args.get("--save-token", "admin_token"))).resolve().parent
    path.mkdir(parents=True, exist_ok=True)
    return path


def _detach(argv: list[str]) -> int:
    """Fork the real daemon into its own session and return right away."""
    child_args = [a for a in argv if a != "--detach"]
    with open("forest.out", "ab") as out, open("forest.err", "ab") as err:
        subprocess.Popen(
            [sys.executable, os.path.abspath(__file__), *child_args],
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=err,
            start_new_session=True,
        )
    return 0


def _write_atomically(path: Path, content: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        if self.path == "/metrics":
            body = b"# TYPE forest_up gauge\nforest_up 1\n"
        else:
            body = b"{}"

        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        # Suppress default logging to keep tests quiet.
        return


def _serve(port_env: str) -> HTTPServer | None:
    port = int(os.environ.get(port_env, "0"))
    if port == 0:
        return None

    server = HTTPServer(("127.0.0.1", port), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def _halt_after_import(args: dict[str, str | bool]) -> int:
    snapshot = args.get("--import-snapshot")
    if isinstance(snapshot, str):
        if not Path(snapshot).exists():
            print(f"Error: snapshot {snapshot} not found", file=sys.stderr)
            return 1
        if Path(snapshot).read_text(encoding="utf-8").strip() != args.get("--chain"):
            print("Error: snapshot belongs to a different network", file=sys.stderr)
            return 1
        print(f"Imported snapshot {snapshot}")
        return 0

    if args.get("--auto-download-snapshot"):
        print(f"Downloaded and imported snapshot at height {args.get('--height', 'latest')}")
        return 0

    print("Error: nothing to import", file=sys.stderr)
    return 1


def main(argv: list[str]) -> int:
    args = _parse_args(argv)
    behavior = os.environ.get("FAKE_NODE_BEHAVIOR", "normal")

    if args.get("--detach"):
        return _detach(argv)

    if behavior == "exit_immediately":
        print("fatal: simulated start-up failure", file=sys.stderr)
        return 1

    if args.get("--halt-after-import"):
        return _halt_after_import(args)

    state = _state_dir(args)
    (state / "pid").write_text(str(os.getpid()), encoding="utf-8")
    (state / "argv.json").write_text(json.dumps(argv), encoding="utf-8")

    if args.get("--stateless"):
        config_path = Path(str(args.get("--config", "")))
        if not config_path.is_file():
            print(f"fatal: config file {config_path} not found", file=sys.stderr)
            return 1
        with open(config_path, "rb") as f:
            seen = tomllib.load(f)
        (state / "config_seen.json").write_text(json.dumps(seen), encoding="utf-8")

    log_dir = Path(str(args.get("--log-dir", "logs")))
    log_dir.mkdir(parents=True, exist_ok=True)
    node_log = log_dir / "forest.log"
    with open(node_log, "a", encoding="utf-8") as f:
        f.write(f"starting fake node pid={os.getpid()} chain={args.get('--chain')}\n")

    if behavior == "ignore_sigterm":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    else:
        def _exit(signum: int, frame: object | None) -> None:
            raise SystemExit(0)

        signal.signal(signal.SIGTERM, _exit)

    print(f"fake node {os.getpid()} started", flush=True)
    servers = [s for s in (_serve("FAKE_NODE_API_PORT"), _serve("FAKE_NODE_METRICS_PORT")) if s is not None]

    token_at = time.monotonic() + float(os.environ.get("FAKE_NODE_TOKEN_DELAY", "0.3"))
    synced_at = time.monotonic() + float(os.environ.get("FAKE_NODE_SYNC_DELAY", "0.5"))
    token_path = Path(str(args.get("--save-token", "admin_token")))
    token_written = False
    synced = False

    try:
        while True:
            now = time.monotonic()
            if not token_written and now >= token_at:
                _write_atomically(token_path, f"fake-admin-token-{os.getpid()}")
                token_written = True
            if not synced and behavior != "never_sync" and now >= synced_at:
                (state / "synced").touch()
                with open(node_log, "a", encoding="utf-8") as f:
                    f.write("chain synced\n")
                synced = True
            time.sleep(0.05)
    except SystemExit as e:
        for server in servers:
            server.shutdown()
            server.server_close()
        print("fake node shutting down", flush=True)
        return int(e.code) if e.code is not None else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
