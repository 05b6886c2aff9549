"""
Compose orchestration.

Drives one compose session from recipient resolution through signing key
unlock, payload assembly and encryption to a single terminal outcome.
Every step runs after the previous one completed; only attachment
encryption fans out.
"""

import asyncio
import logging
import re
from typing import Any, Optional

from ..common.config import Settings, get_settings
from ..common.exceptions import (
    AttachmentEncryptionError,
    EditorDialogCanceled,
    InvalidMessageError,
    MailSealError,
    NoDefaultKeyError,
    NoKeyError,
    NoKeyForRecipientError,
    PasswordDialogCanceled,
    UserCanceledError,
    map_error,
)
from ..interfaces import CryptoEngine, KeyStore, SurfaceHost, ViewPort
from ..keys.models import DecryptedContent, StoredKeyRecord, UnlockedKey
from ..keys.resolver import RecipientKeyMap, RecipientResolver, sort_and_dedup
from ..keys.unlock import UnlockBroker, UnlockReason
from ..popup import PopupKind, PopupSession, PopupSlot
from ..view import ViewEvent
from .mime import ParsedMessage, build_mail, parse_message
from .models import (
    AttachmentData,
    ComposeAction,
    ComposeRequest,
    ComposeResult,
    ComposeSession,
    EditorOptions,
    EncryptedFile,
    SessionState,
)

logger = logging.getLogger(__name__)

PGP_MESSAGE = re.compile(
    r"-----BEGIN PGP MESSAGE-----[\s\S]+?-----END PGP MESSAGE-----"
)
PGP_SIGNED_MESSAGE = re.compile(r"BEGIN\sPGP\sSIGNED\sMESSAGE")
PGP_PUBLIC_KEY = re.compile(rb"-----BEGIN\sPGP\sPUBLIC\sKEY\sBLOCK")
ENCRYPTED_FILE_NAME = re.compile(r".*\.(gpg|pgp|asc)$", re.IGNORECASE)


def normalize_armored(armored: str) -> str:
    """Extract the first PGP MESSAGE block and strip stray indentation."""
    match = PGP_MESSAGE.search(armored)
    if match is None:
        raise InvalidMessageError("No PGP message found")
    return "\n".join(line.strip() for line in match.group(0).splitlines())


class ComposeOrchestrator:
    """
    Drives a single compose session.

    One instance owns one ``ComposeSession``, at most one editor surface
    and its recipient key map.
    """

    def __init__(
        self,
        keyring_id: str,
        *,
        engine: CryptoEngine,
        store: KeyStore,
        resolver: RecipientResolver,
        unlock: UnlockBroker,
        view: ViewPort,
        host: Optional[SurfaceHost] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            keyring_id: Keyring used for this session.
            engine: Crypto engine.
            store: The trusted keyring (read only from here).
            resolver: Recipient resolver.
            unlock: Unlock broker for signing and decryption keys.
            view: Presentation layer event sink.
            host: Surface host for the interactive editor.
            settings: Application settings.
        """
        self.engine = engine
        self.store = store
        self.resolver = resolver
        self.unlock = unlock
        self.view = view
        self.settings = settings or get_settings()
        self.session = ComposeSession(keyring_id=keyring_id)
        self._editor = PopupSlot(host)
        self._tasks: set[asyncio.Task] = set()

    @property
    def keyring_id(self) -> str:
        return self.session.keyring_id

    @property
    def editor_open(self) -> bool:
        return self._editor.active is not None

    def _transition(self, state: SessionState) -> None:
        if self.session.state.terminal:
            raise RuntimeError(
                f"Compose session {self.session.id} already {self.session.state.value}"
            )
        logger.debug("Session %s: %s", self.session.id, state.value)
        self.session.state = state

    def _finish(
        self,
        state: SessionState,
        result: Optional[ComposeResult] = None,
        error: Optional[MailSealError] = None,
    ) -> ComposeResult:
        self._transition(state)
        result = result or ComposeResult(state=state)
        result.state = state
        result.error = error
        self.session.result = result
        self.session.error = error
        logger.info("Compose session %s %s", self.session.id, state.value)
        return result

    def _report(self, error: MailSealError) -> None:
        """Send a failure to the view exactly once."""
        logger.error("Compose session %s failed: %s", self.session.id, error)
        self.view.emit(ViewEvent.ERROR_MESSAGE.value, {"error": error.to_dict()})
        self.view.emit(ViewEvent.ENCRYPT_FAILED.value)

    # Editor setup

    async def load(self, options: EditorOptions) -> dict[str, Any]:
        """
        Apply editor options and load initial content.

        Returns:
            The init data sent to the view.
        """
        if options.armored_draft:
            options = options.model_copy(update={"keep_attachments": True})
        self.session.options = options

        sign_msg = options.sign_msg
        if sign_msg is None:
            sign_msg = self.settings.general.auto_sign_msg
        data: dict[str, Any] = {
            "sign_msg": sign_msg,
            "subject": options.subject,
            "default_key_fpr": await self.store.get_default_signing_fingerprint(),
        }
        if not (options.armored_draft or options.quoted_mail) and options.predefined_text:
            data["text"] = options.predefined_text
        self.view.emit(ViewEvent.SET_INIT_DATA.value, data)

        if options.armored_draft:
            await self.decrypt_armored(options.armored_draft)
        elif options.quoted_mail:
            await self.decrypt_armored(options.quoted_mail)

        if options.attachments:
            await self.set_attachments(options.attachments)
        return data

    async def decrypt_armored(
        self, armored: str, draft: Optional[bool] = None
    ) -> Optional[ParsedMessage]:
        """
        Decrypt or verify ``armored`` and show it in the editor.

        A draft being restored must carry exactly one valid signature;
        otherwise nothing is shown.

        Returns:
            The parsed message, or None if it could not be shown.
        """
        if draft is None:
            draft = bool(self.session.options.armored_draft)
        if len(armored) > self.settings.compose.large_message_threshold and not self.editor_open:
            self.view.emit(ViewEvent.DECRYPT_IN_PROGRESS.value)

        try:
            if "BEGIN PGP MESSAGE" in armored:
                content = await self.engine.decrypt(
                    normalize_armored(armored), self._unlock_for_decrypt
                )
            elif PGP_SIGNED_MESSAGE.search(armored):
                content = await self.engine.verify(armored)
            else:
                content = DecryptedContent(data=armored)

            if draft:
                self._check_draft_signature(content)

            parsed = parse_message(content.data)
        except UserCanceledError:
            logger.info("Decryption canceled by user")
            if self.editor_open:
                self.view.emit(ViewEvent.HIDE_PWD_DIALOG.value)
            return None
        except MailSealError as e:
            logger.warning("Failed to load message: %s", e)
            self.view.emit(ViewEvent.DECRYPT_FAILED.value, {"error": e.to_dict()})
            return None

        self.view.emit(ViewEvent.SET_TEXT.value, {"text": self._quote(parsed.text)})
        if self.session.options.keep_attachments:
            for attachment in parsed.attachments:
                self.view.emit(
                    ViewEvent.SET_ATTACHMENT.value, {"attachment": attachment.model_dump()}
                )
        self.view.emit(ViewEvent.DECRYPT_END.value)
        return parsed

    @staticmethod
    def _check_draft_signature(content: DecryptedContent) -> None:
        signatures = content.signatures
        if not (len(signatures) == 1 and signatures[0].valid):
            raise InvalidMessageError(
                "Restoring of the draft failed due to invalid signature.",
                {"signatures": len(signatures)},
                code="DRAFT_SIGNATURE_INVALID",
            )

    def _quote(self, text: str) -> str:
        options = self.session.options
        if options.quoted_mail_indent:
            text = re.sub(r"^(.|\n)", r"> \1", text, flags=re.MULTILINE)
        if options.quoted_mail_header:
            text = f"{options.quoted_mail_header}\n{text}"
        if options.quoted_mail_indent or options.quoted_mail_header:
            text = f"\n\n{text}"
        if options.predefined_text and (options.quoted_mail or options.armored_draft):
            text = f"{text}\n\n{options.predefined_text}"
        return text

    async def set_attachments(self, attachments: list[AttachmentData]) -> None:
        """Show plain attachments and decrypt encrypted ones."""
        encrypted = []
        for attachment in attachments:
            if ENCRYPTED_FILE_NAME.match(attachment.filename) and not PGP_PUBLIC_KEY.search(
                attachment.content
            ):
                encrypted.append(attachment)
            else:
                self.view.emit(
                    ViewEvent.SET_ATTACHMENT.value, {"attachment": attachment.model_dump()}
                )
        if encrypted:
            self.view.emit(ViewEvent.DECRYPT_IN_PROGRESS.value)
            await self.decrypt_files(encrypted)

    async def decrypt_files(self, files: list[AttachmentData]) -> None:
        """
        Decrypt attachments concurrently and show them in the editor.

        Once the user cancels a passphrase prompt no further prompt is
        opened for the remaining files.
        """
        prompt_lock = asyncio.Lock()
        canceled = False

        async def unlock(fingerprint: str) -> UnlockedKey:
            nonlocal canceled
            async with prompt_lock:
                if canceled:
                    raise PasswordDialogCanceled()
                try:
                    return await self._unlock_for_decrypt(fingerprint)
                except UserCanceledError:
                    canceled = True
                    raise

        async def decrypt_one(file: AttachmentData) -> AttachmentData:
            content = await self.engine.decrypt_file(file.content, unlock)
            filename = file.filename.rsplit(".", 1)[0] or file.filename
            return AttachmentData(filename=filename, content=content, mime_type=file.mime_type)

        results = await asyncio.gather(
            *(decrypt_one(file) for file in files), return_exceptions=True
        )
        for result in results:
            if isinstance(result, AttachmentData):
                self.view.emit(
                    ViewEvent.SET_ATTACHMENT.value, {"attachment": result.model_dump()}
                )

        if any(isinstance(r, UserCanceledError) for r in results):
            logger.info("Attachment decryption canceled by user")
            if self.editor_open:
                self.view.emit(ViewEvent.HIDE_PWD_DIALOG.value)
            return

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.warning("%d attachment(s) could not be decrypted", len(errors))
            self.view.emit(ViewEvent.DECRYPT_FAILED.value, {"error": map_error(errors[0])})
        else:
            self.view.emit(ViewEvent.DECRYPT_END.value)

    # Key unlocking

    def _show_pwd_dialog(self, fingerprint: str) -> None:
        if self.editor_open:
            self.view.emit(ViewEvent.SHOW_PWD_DIALOG.value, {"fingerprint": fingerprint})

    async def _unlock_for_decrypt(self, fingerprint: str) -> UnlockedKey:
        key = await self.unlock.unlock(
            fingerprint,
            UnlockReason.DECRYPT,
            embedded=self.editor_open,
            before_password_request=self._show_pwd_dialog,
        )
        if self.editor_open:
            self.view.emit(ViewEvent.HIDE_PWD_DIALOG.value)
        return key

    async def _unlock_signing_key(
        self, fingerprint: str, reason: UnlockReason, no_cache: bool, sync: bool
    ) -> UnlockedKey:
        self._transition(SessionState.UNLOCKING_SIGNING_KEY)
        key = await self.unlock.unlock(
            fingerprint,
            reason,
            cache_allowed=not no_cache,
            sync=sync,
            embedded=self.editor_open,
            before_password_request=self._show_pwd_dialog,
        )
        self.view.emit(ViewEvent.ENCRYPT_IN_PROGRESS.value)
        return key

    async def _signing_fingerprint(self, override: Optional[str]) -> str:
        fingerprint = override or await self.store.get_default_signing_fingerprint()
        if not fingerprint:
            raise NoDefaultKeyError()
        return fingerprint

    # Recipients

    async def encrypt_for(self, recipients: list[str]) -> RecipientKeyMap:
        """
        Resolve ``recipients`` and use their keys for this session.

        Raises:
            NoKeyForRecipientError: If any recipient has no usable key. The
                session is then failed.
        """
        try:
            key_map = await self._resolve(recipients)
        except NoKeyForRecipientError as e:
            self._report(e)
            self._finish(SessionState.FAILED, error=e)
            raise
        self.session.fingerprint_buffer = key_map.fingerprints()
        return key_map

    async def _resolve(self, recipients: list[str]) -> RecipientKeyMap:
        self._transition(SessionState.RESOLVING_RECIPIENTS)
        key_map = await self.resolver.resolve(
            recipients,
            self.keyring_id,
            on_import=lambda _: self._transition(SessionState.CONFIRMING_KEY_TRUST),
        )
        self.session.recipient_map = key_map
        missing = key_map.missing()
        if missing:
            raise NoKeyForRecipientError(missing)
        return key_map

    async def encryption_fingerprints(self, recipients: list[str]) -> list[str]:
        """
        Collect the fingerprints to encrypt to.

        Uses the fingerprint buffer when set, otherwise resolves every
        recipient. The sender's own key is added when configured.

        Returns:
            Deduplicated, sorted fingerprints.
        """
        if self.session.fingerprint_buffer is not None:
            fingerprints = list(self.session.fingerprint_buffer)
        else:
            key_map = await self._resolve(recipients)
            fingerprints = key_map.fingerprints()

        if self.settings.general.auto_add_primary:
            default = await self.store.get_default_signing_fingerprint()
            if default:
                fingerprints.append(default)

        fingerprints = sort_and_dedup(fingerprints)
        if not fingerprints:
            raise NoKeyError("No key found for encryption", code="NO_KEY_FOR_ENCRYPTION")
        return fingerprints

    # Encryption

    async def _sign_and_encrypt(self, request: ComposeRequest) -> ComposeResult:
        reason = UnlockReason(self.session.reason) if self.session.reason else UnlockReason.SIGN

        if request.action == ComposeAction.SIGN:
            fingerprint = await self._signing_fingerprint(request.sign_key_fpr)
            key = await self._unlock_signing_key(
                fingerprint, UnlockReason.SIGN, request.no_cache, sync=True
            )
            self._transition(SessionState.ENCRYPTING)
            armored = await self.engine.sign(request.message, key)
            return ComposeResult(
                state=SessionState.ENCRYPTING,
                armored=armored,
                subject=request.subject,
                to=request.to,
                cc=request.cc,
            )

        fingerprints = await self.encryption_fingerprints(request.recipients)

        signing_key = None
        if request.sign_msg:
            fingerprint = await self._signing_fingerprint(request.sign_key_fpr)
            signing_key = await self._unlock_signing_key(
                fingerprint,
                reason,
                request.no_cache,
                sync=not self.settings.security.password_cache,
            )

        self._transition(SessionState.BUILDING_PAYLOAD)
        inline = request.attachments if request.pgp_mime else []
        files = [] if request.pgp_mime else request.attachments
        data = build_mail(
            request.message,
            inline,
            pgp_mime=request.pgp_mime,
            subject=request.subject if request.pgp_mime else "",
            domain=self.settings.compose.default_domain,
        )

        self._transition(SessionState.ENCRYPTING)
        self.view.emit(ViewEvent.ENCRYPT_IN_PROGRESS.value)
        armored = await self.engine.encrypt(data, fingerprints, signing_key)
        encrypted_files = []
        if files:
            encrypted_files = await self._encrypt_files(files, fingerprints, signing_key)

        return ComposeResult(
            state=SessionState.ENCRYPTING,
            armored=armored,
            encrypted_files=encrypted_files,
            subject=request.subject,
            to=request.to,
            cc=request.cc,
        )

    async def _encrypt_files(
        self,
        files: list[AttachmentData],
        fingerprints: list[str],
        signing_key: Optional[UnlockedKey],
    ) -> list[EncryptedFile]:
        """
        Encrypt attachments concurrently.

        Every file is awaited before returning. Failures are collected and
        raised together.
        """
        semaphore = asyncio.Semaphore(self.settings.compose.attachment_concurrency)

        async def encrypt_one(file: AttachmentData) -> EncryptedFile:
            armor = file.extension == "txt"
            async with semaphore:
                content = await self.engine.encrypt_file(
                    file.content, fingerprints, signing_key, armor=armor
                )
            suffix = "asc" if armor else "gpg"
            return EncryptedFile(name=f"{file.filename}.{suffix}", content=content)

        results = await asyncio.gather(
            *(encrypt_one(file) for file in files), return_exceptions=True
        )

        failures = {
            file.filename: str(result)
            for file, result in zip(files, results)
            if isinstance(result, BaseException)
        }
        if failures:
            raise AttachmentEncryptionError(failures)
        return [result for result in results if isinstance(result, EncryptedFile)]

    async def compose(self, request: ComposeRequest) -> ComposeResult:
        """
        Run the session to a terminal state.

        Cancellation ends the session silently as CANCELED; any other
        failure is reported once and ends it as FAILED.
        """
        try:
            result = await self._sign_and_encrypt(request)
        except UserCanceledError as e:
            logger.info("Compose session %s canceled: %s", self.session.id, e.code)
            return self._finish(SessionState.CANCELED, error=e)
        except MailSealError as e:
            self._report(e)
            return self._finish(SessionState.FAILED, error=e)

        self.view.emit(ViewEvent.ENCRYPT_END.value)
        return self._finish(SessionState.SUCCEEDED, result)

    async def create_draft(self, request: ComposeRequest) -> ComposeResult:
        """Encrypt and sign ``request`` to the sender's own key only."""
        self.session.reason = UnlockReason.CREATE_DRAFT.value
        default = await self.store.get_default_signing_fingerprint()
        if not default:
            error = NoKeyError(
                "No private key found for creating draft.", code="NO_KEY_FOR_ENCRYPTION"
            )
            self._report(error)
            return self._finish(SessionState.FAILED, error=error)

        self.session.fingerprint_buffer = [default]
        draft_request = request.model_copy(
            update={"action": ComposeAction.ENCRYPT, "sign_msg": True, "draft": True}
        )
        return await self.compose(draft_request)

    async def lookup_key(self, address: str) -> list[StoredKeyRecord]:
        """Look up a recipient key remotely and refresh the editor's key list."""
        keys = await self.resolver.lookup_key(address, self.keyring_id)
        await self.send_key_update()
        return keys

    async def send_key_update(self) -> None:
        keys = await self.store.list_keys()
        self.view.emit(ViewEvent.KEY_UPDATE.value, {"keys": [k.to_dict() for k in keys]})

    # Interactive editor

    async def run_editor(self, options: Optional[EditorOptions] = None) -> ComposeResult:
        """
        Open the compose surface and wait for the session to end.

        The surface stays open after a failed attempt so the user can
        retry. Closing it ends the session as CANCELED, or as FAILED when
        a failure is still pending.
        """
        options = options or EditorOptions()

        def dismissed() -> ComposeResult:
            pending = self.session.pending_failure
            if pending is not None:
                return self._finish(SessionState.FAILED, error=pending)
            return self._finish(SessionState.CANCELED, error=EditorDialogCanceled())

        popup: PopupSession[ComposeResult] = await self._editor.open(
            PopupKind.EDITOR,
            {"session_id": self.session.id, "subject": options.subject},
            on_dismiss=dismissed,
            listeners={
                "editor-plaintext": lambda data: self._spawn(self._submit(data)),
                "key-lookup": lambda data: self._spawn(self.lookup_key(data["email"])),
            },
        )
        try:
            await self.load(options)
            return await popup.wait()
        finally:
            popup.close()
            for task in list(self._tasks):
                task.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _submit(self, data: dict[str, Any]) -> None:
        """Handle plaintext submitted from the open editor."""
        popup = self._editor.active
        if popup is None:
            return
        try:
            request = ComposeRequest.model_validate(data)
        except ValueError as e:
            error = InvalidMessageError("Invalid compose request", {"reason": str(e)})
            self.session.pending_failure = error
            self._report(error)
            return

        try:
            result = await self._sign_and_encrypt(request)
        except PasswordDialogCanceled:
            # stay in the editor, just retract the password prompt
            self.view.emit(ViewEvent.HIDE_PWD_DIALOG.value)
            self.session.state = SessionState.IDLE
            return
        except MailSealError as e:
            self.session.pending_failure = e
            self.session.state = SessionState.IDLE
            self._report(e)
            return

        self.session.pending_failure = None
        self.view.emit(ViewEvent.ENCRYPT_END.value)
        popup.settle(self._finish(SessionState.SUCCEEDED, result))
