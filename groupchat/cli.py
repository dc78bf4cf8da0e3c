import argparse
import os

import uvicorn

# Options that map onto GROUPCHAT_* settings; applied before groupchat.config is imported
_ENV_OPTIONS = {
    "home": "GROUPCHAT_HOME",
    "db": "GROUPCHAT_DB",
    "transcript_dir": "GROUPCHAT_TRANSCRIPT_DIR",
    "max_auto_responses": "GROUPCHAT_MAX_AUTO_RESPONSES",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the AgentGroupChat HTTP/SSE server")
    parser.add_argument("--host", default=None, help="Bind host (default: GROUPCHAT_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: GROUPCHAT_PORT or 39775)")
    parser.add_argument("--home", default=None, help="Data directory for the database, transcripts and prompt config")
    parser.add_argument("--db", default=None, help="SQLite database path")
    parser.add_argument("--transcript-dir", default=None, help="Directory for JSON transcripts and debug logs")
    parser.add_argument("--max-auto-responses", type=int, default=None,
                        help="Automatic replies per participant before a user message is required (0 = unlimited)")
    parser.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    for attr, env in _ENV_OPTIONS.items():
        value = getattr(args, attr)
        if value is not None:
            os.environ[env] = str(value)

    from groupchat.config import HOST, PORT

    uvicorn.run(
        "groupchat.main:app",
        host=args.host or HOST,
        port=args.port or PORT,
        reload=args.reload,
        log_level=args.log_level,
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
