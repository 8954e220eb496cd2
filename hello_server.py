import os
import sys
import argparse
import copy
import socket

from fastapi import FastAPI
from fastapi.responses import Response

HELLO_BODY = "Hello, World!\n"
READY_MESSAGE = "Server running at http://{host}:{port}/"

DEFAULT_PORT = 3000
DEFAULT_HOST = "127.0.0.1"

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

app = FastAPI()


@app.api_route("/{path:path}", methods=ALL_METHODS)
async def hello(path: str) -> Response:
    """Fixed reply, whatever the method or path."""
    return Response(
        content=HELLO_BODY, status_code=200, headers={"Content-Type": "text/plain"}
    )


def _timestamped_log_config():
    try:
        from uvicorn.config import LOGGING_CONFIG
    except Exception:  # pragma: no cover - uvicorn import guard
        return None

    log_config = copy.deepcopy(LOGGING_CONFIG)
    formatters = log_config.get("formatters", {})
    for name in ("default", "access"):
        formatter = formatters.get(name)
        if not formatter:
            continue
        fmt = formatter.get("fmt")
        if fmt:
            formatter["fmt"] = f"%(asctime)s {fmt}"
        else:
            formatter["fmt"] = "%(asctime)s %(message)s"
    return log_config


def _env_port(env) -> int:
    value = env.get("HELLO_SERVER_PORT")
    if not value:
        return DEFAULT_PORT
    try:
        return int(value)
    except ValueError:
        print(f"HELLO_SERVER_PORT must be an integer, not '{value}'", file=sys.stderr)
        sys.exit(1)


def parse_args(argv=None, env=None):
    if env is None:
        env = os.environ
    parser = argparse.ArgumentParser(
        description="Minimal HTTP server answering every request with a fixed text."
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Network port (default: $HELLO_SERVER_PORT, else %(default)s)",
        default=_env_port(env),
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Network host (default: $HELLO_SERVER_HOSTNAME, else %(default)s)",
        default=env.get("HELLO_SERVER_HOSTNAME") or DEFAULT_HOST,
    )
    args = parser.parse_args(argv)
    if not 0 < args.port <= 65535:
        parser.error("--port must be between 1 and 65535")
    return args


def main(argv=None):
    import uvicorn

    args = parse_args(argv)
    try:
        sock = socket.create_server((args.host, args.port))
    except OSError as exc:
        print(f"Cannot listen on {args.host}:{args.port}: {exc}", file=sys.stderr)
        return 1

    log_config = _timestamped_log_config()
    config_kwargs = dict(app=app, host=args.host, port=args.port, lifespan="off")
    if log_config is not None:
        config_kwargs["log_config"] = log_config
    server = uvicorn.Server(uvicorn.Config(**config_kwargs))

    # The socket is bound, so connections queue from here on
    print(READY_MESSAGE.format(host=args.host, port=args.port), flush=True)
    server.run(sockets=[sock])
    return 0


if __name__ == "__main__":
    sys.exit(main())
