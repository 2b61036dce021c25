"""
Delivery of archives to every enabled target.
"""

import logging
from dataclasses import dataclass
from typing import List, Dict, Optional, Callable

from .compression import Archive
from .profile import RemoteTarget
from .storage import Transport, StorageError, BandwidthThrottle

logger = logging.getLogger(__name__)


class UploadError(StorageError):
    """Raised when an archive cannot be transferred to a target."""
    pass


class VerificationError(StorageError):
    """Raised when the remote copy does not match the local archive."""
    pass


@dataclass
class UploadOutcome:
    """Result of delivering one archive to one target."""
    target: RemoteTarget
    archive_name: str
    transport_succeeded: bool
    verified: Optional[bool] = None
    error: Optional[str] = None

    @property
    def effective_success(self) -> bool:
        """Transferred, and verified unless verification was not requested."""
        return self.transport_succeeded and self.verified is not False


class Uploader:
    """
    Ships archives to targets with a shared bandwidth ceiling.

    Every enabled target is attempted for every archive; a failure at one
    target never prevents the attempt at the next.
    """

    def __init__(self, transport_factory: Callable[[RemoteTarget], Transport],
                 throttle: BandwidthThrottle, integrity_check: bool = True,
                 log: Callable[[str], None] = None):
        """
        Initialize uploader.

        Args:
            transport_factory: Builds the transport for a target
            throttle: Run-wide bandwidth throttle
            integrity_check: Verify each upload after transfer
            log: Optional run-log sink (defaults to the module logger)
        """
        self.transport_factory = transport_factory
        self.throttle = throttle
        self.integrity_check = integrity_check
        self._log = log or logger.info
        self._transports: Dict[str, Transport] = {}

    def transport_for(self, target: RemoteTarget) -> Transport:
        """Transport for ``target``, built once per run."""
        if target.name not in self._transports:
            self._transports[target.name] = self.transport_factory(target)
        return self._transports[target.name]

    def upload(self, archive: Archive, targets: List[RemoteTarget]) -> List[UploadOutcome]:
        """
        Deliver ``archive`` to each enabled target in order.

        Args:
            archive: Archive to ship
            targets: Targets in enable-order (disabled ones are skipped)

        Returns:
            One UploadOutcome per enabled target
        """
        outcomes = []
        for target in targets:
            if not target.enabled:
                continue
            outcomes.append(self._upload_one(archive, target))
        return outcomes

    def _upload_one(self, archive: Archive, target: RemoteTarget) -> UploadOutcome:
        try:
            transport = self.transport_for(target)
            self._log(f"Uploading {archive.file_name} to {transport.ref(archive.file_name)}")
            transport.copy(archive.file_path, archive.file_name, self.throttle)
        except StorageError as e:
            error = UploadError(f"Upload of {archive.file_name} to {target.name} failed: {e}")
            logger.error(str(error))
            return UploadOutcome(target, archive.file_name, False, error=str(error))
        except Exception as e:
            logger.exception(f"Unexpected error uploading to {target.name}")
            return UploadOutcome(target, archive.file_name, False, error=f"Unexpected error: {e}")

        if not self.integrity_check:
            self._log(f"Uploaded {archive.file_name} to {target.name}")
            return UploadOutcome(target, archive.file_name, True)

        # Not retried: a mismatch downgrades this target's outcome
        try:
            verified = transport.verify(archive.file_path, archive.file_name)
        except StorageError as e:
            logger.error(f"Verification of {archive.file_name} on {target.name} errored: {e}")
            verified = False
        except Exception:
            logger.exception(f"Unexpected error verifying {archive.file_name} on {target.name}")
            verified = False

        if not verified:
            error = VerificationError(f"Integrity check failed for {archive.file_name} on {target.name}")
            logger.error(str(error))
            return UploadOutcome(target, archive.file_name, True, verified=False, error=str(error))

        self._log(f"Uploaded and verified {archive.file_name} on {target.name}")
        return UploadOutcome(target, archive.file_name, True, verified=True)

    def sync(self, local_path: str, name: str, targets: List[RemoteTarget]) -> List[UploadOutcome]:
        """
        Mirror ``local_path`` into ``name`` on each enabled target in order.

        Sync runs are not verified; a failed target never stops the next one.
        """
        outcomes = []
        for target in targets:
            if not target.enabled:
                continue
            try:
                transport = self.transport_for(target)
                self._log(f"Syncing {local_path} to {transport.ref(name)}")
                transport.sync(local_path, name, self.throttle)
            except StorageError as e:
                error = UploadError(f"Sync of {local_path} to {target.name} failed: {e}")
                logger.error(str(error))
                outcomes.append(UploadOutcome(target, name, False, error=str(error)))
                continue
            except Exception as e:
                logger.exception(f"Unexpected error syncing to {target.name}")
                outcomes.append(UploadOutcome(target, name, False, error=f"Unexpected error: {e}"))
                continue
            self._log(f"Synced {local_path} to {target.name}")
            outcomes.append(UploadOutcome(target, name, True))
        return outcomes
