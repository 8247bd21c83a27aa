"""Command-line utilities for authorizing and managing SSH keys."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional, Sequence

import structlog
from pydantic import ValidationError

from ..clients.base import Session
from ..clients.compute import ComputeEngineClient
from ..clients.http import create_api_client
from ..clients.oslogin import OsLoginClient
from ..clients.resource_manager import ResourceManagerClient
from ..common.errors import CredentialValidationError, StratusError
from ..common.observability import configure_from_settings
from ..common.schemas import InstanceLocator
from ..common.settings import AuthorizerSettings
from ..ssh.authorized_keys import AuthorizedKeyRecord, UnmanagedProvenance
from ..ssh.authorizer import CredentialAuthorizer
from ..ssh.credential import AuthorizationMethod
from ..ssh.signers import KeyType

LOGGER = structlog.get_logger("stratus.cli.keys")

EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authorize and manage SSH keys for VM instances")
    parser.add_argument("--account", help="Login email of the caller (defaults to STRATUS_ACCOUNT)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_target(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument("--project", required=True, help="Project ID")
        subparser.add_argument("--zone", required=True, help="Zone of the instance")
        subparser.add_argument("--instance", required=True, help="Instance name")
        subparser.add_argument(
            "--methods",
            help="Comma-separated authorization methods (oslogin,project,instance)",
        )

    authorize_parser = subparsers.add_parser("authorize", help="Authorize an ephemeral key for an instance")
    add_target(authorize_parser)
    authorize_parser.add_argument("--username", help="Preferred POSIX username")
    authorize_parser.add_argument("--validity", type=int, help="Key validity in seconds")
    authorize_parser.add_argument(
        "--key-type",
        choices=[key_type.value for key_type in KeyType],
        help="Type of the ephemeral key",
    )
    authorize_parser.add_argument("--json", action="store_true", help="Output JSON")

    list_parser = subparsers.add_parser("list", help="List keys authorized for an instance")
    add_target(list_parser)
    list_parser.add_argument("--json", action="store_true", help="Output JSON")

    remove_parser = subparsers.add_parser("remove", help="Remove a key from instance and project metadata")
    add_target(remove_parser)
    remove_parser.add_argument("--username", required=True, help="POSIX username of the key")
    remove_parser.add_argument("--key-type", required=True, help="SSH key type, for example ssh-ed25519")
    remove_parser.add_argument("--key", required=True, help="Base64-encoded public key")

    return parser.parse_args(argv)


def build_session(settings: AuthorizerSettings, account: Optional[str] = None) -> Session:
    username = account or settings.account
    if not username:
        raise CredentialValidationError("No account configured; pass --account or set STRATUS_ACCOUNT")
    return Session(username=username, principal_identifier=settings.workforce_principal)


@asynccontextmanager
async def open_authorizer(settings: AuthorizerSettings, session: Session) -> AsyncIterator[CredentialAuthorizer]:
    async with create_api_client(settings) as http_client:
        yield CredentialAuthorizer(
            ComputeEngineClient(http_client, settings.compute_base_url),
            ResourceManagerClient(http_client, settings.resource_manager_base_url),
            OsLoginClient(http_client, session, settings.oslogin_base_url),
            session,
            settings=settings,
        )


def _allowed_methods(args: argparse.Namespace, settings: AuthorizerSettings) -> AuthorizationMethod:
    if args.methods:
        methods = AuthorizationMethod.parse(args.methods.split(","))
        if not methods:
            raise CredentialValidationError("At least one authorization method must be allowed")
        return methods
    return settings.authorization_methods


def _locator(args: argparse.Namespace) -> InstanceLocator:
    return InstanceLocator(project_id=args.project, zone=args.zone, name=args.instance)


def print_table(rows: list[dict[str, str]]) -> None:
    headers = ["scope", "username", "key_type", "owner", "expire_on"]
    widths = {header: len(header) for header in headers}
    for row in rows:
        for key in headers:
            widths[key] = max(widths[key], len(row[key]))

    print("  ".join(key.ljust(widths[key]) for key in headers))
    print("  ".join("-" * widths[key] for key in headers))
    for row in rows:
        print("  ".join(row[key].ljust(widths[key]) for key in headers))


async def authorize(args: argparse.Namespace, settings: AuthorizerSettings, session: Session) -> None:
    allowed = _allowed_methods(args, settings)
    validity = timedelta(seconds=args.validity) if args.validity is not None else None
    key_type = KeyType(args.key_type) if args.key_type else None
    async with open_authorizer(settings, session) as authorizer:
        credential = await authorizer.authorize(
            _locator(args),
            key_type=key_type,
            validity=validity,
            preferred_username=args.username,
            allowed=allowed,
        )
    result = {
        "method": credential.method.label,
        "username": credential.username,
        "public_key": credential.signer.public_key_openssh(),
    }
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"Method: {result['method']}")
        print(f"Username: {result['username']}")
        print(f"Public key: {result['public_key']}")


async def list_keys(args: argparse.Namespace, settings: AuthorizerSettings, session: Session) -> None:
    allowed = _allowed_methods(args, settings)
    rows: list[dict[str, Any]] = []
    async with open_authorizer(settings, session) as authorizer:
        processor = await authorizer.open_processor(_locator(args))
        for scope in (AuthorizationMethod.PROJECT_METADATA, AuthorizationMethod.INSTANCE_METADATA):
            if scope not in allowed:
                continue
            for record in processor.list_authorized_keys(scope):
                rows.append(
                    {
                        "scope": scope.label,
                        "username": record.posix_username,
                        "key_type": record.key_type,
                        "owner": record.email or getattr(record.provenance, "owner", "") or "-",
                        "expire_on": record.expire_on.isoformat() if record.expire_on else "-",
                    }
                )
        if AuthorizationMethod.OS_LOGIN in allowed and not session.is_workforce:
            for key in await authorizer.issuer.list_authorized_keys():
                rows.append(
                    {
                        "scope": AuthorizationMethod.OS_LOGIN.label,
                        "username": "-",
                        "key_type": key.key_type,
                        "owner": key.email,
                        "expire_on": key.expire_on.isoformat() if key.expire_on else "-",
                    }
                )
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        print_table(rows)


async def remove(args: argparse.Namespace, settings: AuthorizerSettings, session: Session) -> None:
    allowed = _allowed_methods(args, settings) & AuthorizationMethod.METADATA
    if not allowed:
        raise CredentialValidationError("Keys can only be removed from project or instance metadata")
    record = AuthorizedKeyRecord(args.username, args.key_type, args.key, UnmanagedProvenance(""))
    async with open_authorizer(settings, session) as authorizer:
        processor = await authorizer.open_processor(_locator(args))
        await processor.remove_authorized_key(record, allowed)
    print(f"Removed key for {args.username}")


COMMANDS = {
    "authorize": authorize,
    "list": list_keys,
    "remove": remove,
}


async def run(args: argparse.Namespace, settings: Optional[AuthorizerSettings] = None) -> int:
    try:
        settings = settings or AuthorizerSettings()
    except ValidationError as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    configure_from_settings("stratus-keys", settings, json_output=False)

    try:
        session = build_session(settings, args.account)
        await COMMANDS[args.command](args, settings, session)
    except StratusError as exc:
        LOGGER.debug("Command failed", command=args.command, error=type(exc).__name__)
        print(f"error: {exc.message}", file=sys.stderr)
        if exc.help_topic:
            print(f"see: {exc.help_topic}", file=sys.stderr)
        return EXIT_FAILURE
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        code = asyncio.run(run(args))
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("cancelled", file=sys.stderr)
        code = EXIT_CANCELLED
    raise SystemExit(code)


if __name__ == "__main__":
    main()
