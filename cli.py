"""
Command line for the license service.

Server side: serve, generate, show, revoke, reinstate.
Client side: activate, validate, deactivate, status, reset.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import List, Optional

import database
from config import settings
from errors import DuplicateLicenseError, StorageError
from key_codec import generate
from license_client import ClientLicenseAgent
from license_store import LicenseStore
from logging_config import configure_logging

logger = logging.getLogger(__name__)

GENERATE_ATTEMPTS = 5


def _store() -> LicenseStore:
    database.init_db(database.engine)
    return LicenseStore(database.SessionLocal, logger=logging.getLogger("license_store"))


def _fmt(value) -> str:
    return value.isoformat(sep=" ", timespec="seconds") if value else "Never"


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host=args.host, port=args.port, log_config=None)
    return 0


def cmd_generate(args) -> int:
    store = _store()
    expires_at = None
    if args.expires_in_days is not None:
        expires_at = database.utcnow() + timedelta(days=args.expires_in_days)

    print(f"Generating {args.count} license(s) with {args.max} max activation(s) each")
    created = 0
    for _ in range(args.count):
        for _attempt in range(GENERATE_ATTEMPTS):
            try:
                license = store.create_license(generate(), args.max, expires_at=expires_at)
            except DuplicateLicenseError:
                continue
            print(f"  {license.license_key}  max={license.max_activations}  expires={_fmt(license.expires_at)}")
            created += 1
            break
        else:
            print("Could not generate a unique key, giving up", file=sys.stderr)
            return 1

    print(f"Successfully generated {created} license key(s)")
    return 0


def cmd_show(args) -> int:
    store = _store()

    print("LICENSES:")
    licenses = store.list_licenses()
    if not licenses:
        print("  No licenses found.")
    for license in licenses:
        print(f"  {license.license_key}  status={license.status}  "
              f"activations={license.current_activations}/{license.max_activations}  "
              f"expires={_fmt(license.expires_at)}")

    print("ACTIVATIONS:")
    activations = store.list_activations()
    if not activations:
        print("  No activations found.")
    for activation in activations:
        print(f"  {activation.license_key}  machine={activation.machine_id}  "
              f"activated={_fmt(activation.activated_at)}  last_validated={_fmt(activation.last_validated_at)}")

    print(f"VALIDATION LOG (last {args.logs}):")
    for entry in store.recent_validation_logs(args.logs):
        mark = "OK " if entry.success else "ERR"
        print(f"  {_fmt(entry.created_at)}  {mark} {entry.action:<10} {entry.license_key}  {entry.reason}")
    return 0


def _set_status(key: str, status: str) -> int:
    if not _store().set_license_status(key.strip().upper(), status):
        print(f"License not found: {key}", file=sys.stderr)
        return 1
    print(f"License {key.strip().upper()} is now {status}")
    return 0


def cmd_revoke(args) -> int:
    return _set_status(args.key, "inactive")


def cmd_reinstate(args) -> int:
    return _set_status(args.key, "active")


def _agent() -> ClientLicenseAgent:
    agent = ClientLicenseAgent(logger=logging.getLogger("license_client"))
    agent.load_activation_state()
    return agent


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_activate(args) -> int:
    result = asyncio.run(_agent().activate_license(args.key))
    _print_json(result)
    return 0 if result["success"] else 1


def cmd_validate(args) -> int:
    result = asyncio.run(_agent().validate_with_server(args.key))
    _print_json(result)
    return 0 if result["valid"] else 1


def cmd_deactivate(args) -> int:
    result = asyncio.run(_agent().deactivate_license())
    _print_json(result)
    return 0 if result["success"] else 1


def cmd_status(args) -> int:
    agent = _agent()
    server = asyncio.run(agent.check_server_status())
    _print_json({
        "activated": agent.is_activated(),
        "offlineDays": agent.get_offline_mode_days(),
        "warnOffline": agent.should_warn_about_offline_mode(),
        "revalidationAdvised": agent.revalidation_advised(),
        "server": server,
        "diagnostics": agent.get_diagnostics(),
    })
    return 0


def cmd_reset(args) -> int:
    _print_json(_agent().reset_license())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ps-license", description="PS license server and client tools")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    parser.add_argument("--log-json", action="store_true", default=settings.LOG_JSON,
                        help="Emit JSON log records")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the license server")
    serve.add_argument("--host", default=settings.SERVER_HOST)
    serve.add_argument("--port", type=int, default=settings.SERVER_PORT)
    serve.set_defaults(func=cmd_serve)

    gen = sub.add_parser("generate", help="Create new license keys")
    gen.add_argument("--max", type=int, default=settings.DEFAULT_MAX_ACTIVATIONS, help="Max activations per key")
    gen.add_argument("--count", type=int, default=1, help="Number of keys to create")
    gen.add_argument("--expires-in-days", type=int, default=None, help="Expiry from now (default: perpetual)")
    gen.set_defaults(func=cmd_generate)

    show = sub.add_parser("show", help="Print licenses, activations and recent validation log")
    show.add_argument("--logs", type=int, default=10, help="Number of log entries to show")
    show.set_defaults(func=cmd_show)

    for name, func, help_text in (
        ("revoke", cmd_revoke, "Mark a license inactive"),
        ("reinstate", cmd_reinstate, "Mark a license active again"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("key")
        p.set_defaults(func=func)

    act = sub.add_parser("activate", help="Activate this installation")
    act.add_argument("key")
    act.set_defaults(func=cmd_activate)

    val = sub.add_parser("validate", help="Validate this installation's license with the server")
    val.add_argument("key", nargs="?", default=None)
    val.set_defaults(func=cmd_validate)

    sub.add_parser("deactivate", help="Release this installation's seat").set_defaults(func=cmd_deactivate)
    sub.add_parser("status", help="Show local activation and server status").set_defaults(func=cmd_status)
    sub.add_parser("reset", help="Forget the local activation").set_defaults(func=cmd_reset)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_json)
    try:
        return args.func(args)
    except StorageError as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
