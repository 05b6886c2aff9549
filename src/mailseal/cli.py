#!/usr/bin/env python3
"""
Command-line interface for mailseal.

Usage:
    mailseal [OPTIONS] COMMAND ...

Commands:
    import-key FILE         Import a public key after confirmation
    lookup ADDRESS          Look up a key on the configured key server
    test-keyserver [URL]    Check that key servers are reachable
    encrypt FILE            Encrypt a message for recipients
    sign FILE               Cleartext sign a message
    decrypt FILE            Decrypt or verify a message
"""

import argparse
import asyncio
import getpass
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from mailseal import __version__
from mailseal.common.config import Settings, get_settings
from mailseal.common.exceptions import KeyLookupError, MailSealError
from mailseal.compose.models import AttachmentData, ComposeAction, ComposeRequest
from mailseal.compose.orchestrator import ComposeOrchestrator
from mailseal.crypto.cache import MemoryPassphraseCache
from mailseal.crypto.pgp import GnuPGEngine, GnuPGKeyStore, create_gpg
from mailseal.keys.reconciler import KeyReconciler
from mailseal.keys.resolver import RecipientResolver
from mailseal.keys.unlock import UnlockBroker
from mailseal.keyserver.hkp import HKPKeyLookup
from mailseal.popup import PopupKind
from mailseal.view import LoggingView

logger = logging.getLogger(__name__)

KEYRING_ID = "localhost"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = LOG_FORMAT,
) -> None:
    """
    Configure logging for the command-line tool.

    Args:
        level: Log level name.
        log_file: Optional file to log to instead of stderr.
        log_format: Log record format.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers = [logging.FileHandler(log_file)]

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=handlers,
    )
    logging.getLogger("gnupg").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class TerminalSurface:
    """A modal surface rendered as a prompt on the terminal."""

    def __init__(self, kind: str, payload: dict[str, Any]) -> None:
        self.kind = kind
        self.payload = payload
        self._on_message: Optional[Callable[[str, dict[str, Any]], None]] = None
        self._on_close: Optional[Callable[[], None]] = None
        self._task = asyncio.create_task(self._run())

    def close(self) -> None:
        self._task.cancel()

    def on_close(self, callback: Callable[[], None]) -> None:
        self._on_close = callback

    def on_message(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        self._on_message = callback

    def post(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        if name == "import-error":
            print(f"Import failed: {(data or {}).get('message')}", file=sys.stderr)

    def _send(self, name: str, data: Optional[dict[str, Any]] = None) -> None:
        if self._on_message is not None:
            self._on_message(name, data or {})

    def _dismiss(self) -> None:
        if self._on_close is not None:
            self._on_close()

    async def _run(self) -> None:
        try:
            if self.kind == PopupKind.PASSWORD.value:
                await self._password()
            elif self.kind == PopupKind.IMPORT_KEY.value:
                await self._import_key()
            else:
                logger.error("The terminal cannot show a %s surface", self.kind)
                self._dismiss()
        except (EOFError, KeyboardInterrupt):
            self._dismiss()

    async def _password(self) -> None:
        prompt = f"Passphrase for key {self.payload.get('fingerprint')}: "
        password = await asyncio.to_thread(getpass.getpass, prompt)
        if not password:
            self._send("pwd-dialog-cancel")
            return
        self._send("pwd-dialog-ok", {"password": password, "cache": True})

    async def _import_key(self) -> None:
        key = self.payload.get("key", {})
        users = ", ".join(user["email"] for user in key.get("users", []))
        print(f"Key {key.get('fingerprint')} ({users})")
        if self.payload.get("invalidated"):
            print("WARNING: this update makes the stored key unusable.")
        elif self.payload.get("rotation"):
            print("NOTE: this key replaces a key for the same address.")
        answer = await asyncio.to_thread(input, "Import this key? [y/N] ")
        if answer.strip().lower() in ("y", "yes"):
            self._send("key-import-dialog-ok")
        else:
            self._send("key-import-dialog-cancel")


class TerminalSurfaceHost:
    """Opens terminal prompts in place of dialogs."""

    async def open(self, kind: str, payload: dict[str, Any]) -> TerminalSurface:
        return TerminalSurface(kind, payload)


class Context:
    """Wires the core components for one CLI invocation."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        gpg = create_gpg(settings.crypto)
        self.engine = GnuPGEngine(gpg)
        self.store = GnuPGKeyStore(gpg, settings.crypto.default_key)
        self.host = TerminalSurfaceHost()
        self.reconciler = KeyReconciler(self.engine, self.store, self.host)
        self.lookup = HKPKeyLookup(self.engine, settings.keyserver)
        self.resolver = RecipientResolver(self.store, self.reconciler, self.lookup)
        self.unlock = UnlockBroker(
            self.engine,
            MemoryPassphraseCache(),
            self.host,
            KEYRING_ID,
            settings=settings.security,
        )

    def orchestrator(self) -> ComposeOrchestrator:
        return ComposeOrchestrator(
            KEYRING_ID,
            engine=self.engine,
            store=self.store,
            resolver=self.resolver,
            unlock=self.unlock,
            view=LoggingView(),
            host=self.host,
            settings=self.settings,
        )


def _read(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _attachment(path: str) -> AttachmentData:
    file = Path(path)
    mime_type, _ = mimetypes.guess_type(file.name)
    return AttachmentData(
        filename=file.name,
        content=file.read_bytes(),
        mime_type=mime_type or "application/octet-stream",
    )


async def cmd_import_key(ctx: Context, args: argparse.Namespace) -> int:
    result = await ctx.reconciler.import_key(_read(args.file))
    print(result.outcome.value)
    return 0


async def cmd_lookup(ctx: Context, args: argparse.Namespace) -> int:
    keys = await ctx.resolver.lookup_key(args.address, KEYRING_ID)
    if not keys:
        print(f"No usable key for {args.address}", file=sys.stderr)
        return 1
    for key in keys:
        print(key.fingerprint)
    return 0


async def cmd_test_keyserver(ctx: Context, args: argparse.Namespace) -> int:
    urls = [args.url] if args.url else ctx.settings.keyserver.hkp_server_list
    failed = 0
    for url in urls:
        try:
            await asyncio.to_thread(ctx.lookup.test_server, url)
        except KeyLookupError as e:
            failed += 1
            logger.warning("Key server %s failed: %s", url, e)
            print(f"{url}: unreachable")
        else:
            print(f"{url}: ok")
    return 1 if failed else 0


async def cmd_encrypt(ctx: Context, args: argparse.Namespace) -> int:
    request = ComposeRequest(
        action=ComposeAction.ENCRYPT,
        message=_read(args.file),
        to=args.to,
        sign_msg=args.sign,
        sign_key_fpr=args.sign_key,
        attachments=[_attachment(path) for path in args.attach],
    )
    result = await ctx.orchestrator().compose(request)
    if not result.succeeded:
        return 1

    print(result.armored)
    for file in result.encrypted_files:
        Path(file.name).write_bytes(file.content)
        logger.info("Wrote %s (%d bytes)", file.name, file.size)
    return 0


async def cmd_sign(ctx: Context, args: argparse.Namespace) -> int:
    request = ComposeRequest(action=ComposeAction.SIGN, message=_read(args.file))
    result = await ctx.orchestrator().compose(request)
    if not result.succeeded:
        return 1
    print(result.armored)
    return 0


async def cmd_decrypt(ctx: Context, args: argparse.Namespace) -> int:
    parsed = await ctx.orchestrator().decrypt_armored(_read(args.file), draft=args.draft)
    if parsed is None:
        return 1

    print(parsed.text)
    for attachment in parsed.attachments:
        Path(attachment.filename).write_bytes(attachment.content)
        logger.info("Wrote attachment %s", attachment.filename)
    return 0


COMMANDS = {
    "import-key": cmd_import_key,
    "lookup": cmd_lookup,
    "test-keyserver": cmd_test_keyserver,
    "encrypt": cmd_encrypt,
    "sign": cmd_sign,
    "decrypt": cmd_decrypt,
}


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog="mailseal",
        description="mailseal - PGP key trust and secure compose",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    MAILSEAL_CONFIG_FILE        TOML configuration file
    MAILSEAL_CRYPTO_GNUPG_HOME  GnuPG home directory
    MAILSEAL_LOG_LEVEL          Log level
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--version", action="version", version=f"mailseal {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    import_key = subparsers.add_parser("import-key", help="Import a public key")
    import_key.add_argument("file", help="File with the armored key")

    lookup = subparsers.add_parser("lookup", help="Look up a key on the key server")
    lookup.add_argument("address", help="Mail address")

    test_keyserver = subparsers.add_parser(
        "test-keyserver", help="Check that key servers are reachable"
    )
    test_keyserver.add_argument(
        "url", nargs="?", help="Server to check (default: all configured servers)"
    )

    encrypt = subparsers.add_parser("encrypt", help="Encrypt a message")
    encrypt.add_argument("file", help="File with the message text")
    encrypt.add_argument(
        "--to", nargs="+", required=True, metavar="ADDR", help="Recipients"
    )
    encrypt.add_argument("--sign", action="store_true", help="Sign the message")
    encrypt.add_argument("--sign-key", metavar="FPR", help="Signing key fingerprint")
    encrypt.add_argument(
        "--attach", nargs="*", default=[], metavar="FILE", help="Files to encrypt"
    )

    sign = subparsers.add_parser("sign", help="Cleartext sign a message")
    sign.add_argument("file", help="File with the message text")

    decrypt = subparsers.add_parser("decrypt", help="Decrypt or verify a message")
    decrypt.add_argument("file", help="File with the armored message")
    decrypt.add_argument(
        "--draft", action="store_true", help="Require exactly one valid signature"
    )

    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the mailseal command.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    args = parse_args(argv)

    try:
        settings = get_settings()
    except MailSealError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    level = "DEBUG" if args.debug else settings.logging.level
    setup_logging(level, settings.logging.file, settings.logging.format)
    logger.debug("Starting mailseal v%s", __version__)

    async def run() -> int:
        ctx = Context(settings)
        try:
            return await COMMANDS[args.command](ctx, args)
        finally:
            await ctx.unlock.drain()

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except MailSealError as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
