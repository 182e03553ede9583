"""CLI entry point for the apigate server and client provisioning."""

import argparse
import asyncio
import os


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("apigate.main:app", host=args.host, port=args.port)


async def _create_client(args: argparse.Namespace) -> tuple[str, str]:
    from apigate.config import settings
    from apigate.db.base import Base
    from apigate.db.engine import create_db_engine, create_session_factory
    from apigate.repositories.client_repo import ClientRepository
    import apigate.db.models  # noqa: F401

    engine = create_db_engine(settings.effective_database_url)
    try:
        if "sqlite" in settings.effective_database_url:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        async with create_session_factory(engine)() as session:
            row, raw_key = await ClientRepository(session).create_client(
                name=args.name,
                rate_limit=args.rate_limit or settings.rate_limit_default,
                scopes=args.scope or [],
                workspace_id=args.workspace,
            )
            await session.commit()
            return row.client_id, raw_key
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="apigate-server",
        description="apigate: API key authentication, rate limiting and webhook delivery",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Local dev mode: SQLite database, in-process rate counters, no Redis",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server (default)")
    serve.add_argument("--host", default=None, help="Bind host (default: APIGATE_HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: APIGATE_PORT or 8080)")

    create = sub.add_parser("create-client", help="Create a client and print its API key once")
    create.add_argument("name", help="Display name")
    create.add_argument("--rate-limit", type=int, default=None, help="Requests per window")
    create.add_argument(
        "--scope", action="append", help="Event type the client may publish (repeatable, '*' for all)"
    )
    create.add_argument("--workspace", default=None, help="Workspace id (defaults to the client id)")

    args = parser.parse_args(argv)

    if args.local:
        os.environ["APIGATE_LOCAL_MODE"] = "1"

    if args.command == "create-client":
        client_id, raw_key = asyncio.run(_create_client(args))
        print(f"client_id: {client_id}")
        print(f"api_key:   {raw_key}")
        print("Store this key now; it cannot be shown again.")
        return

    if args.command is None:
        args = parser.parse_args(["serve"] if not args.local else ["--local", "serve"])

    # Imported after --local so the settings see APIGATE_LOCAL_MODE
    from apigate.config import settings

    args.host = args.host or settings.host
    args.port = args.port or settings.port
    _serve(args)


if __name__ == "__main__":
    main()
