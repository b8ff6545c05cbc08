"""Turns symbolic credential references into placeholders and boot-time fetch commands."""
import logging
from typing import List, Optional, Set, Tuple

from .models import (
    FetchCommand,
    LiteralValue,
    SecretField,
    SecretHandle,
    StringOrSecret,
    as_secret_ref,
)

logger = logging.getLogger(__name__)


def placeholder_for(handle: SecretHandle, field: Optional[str] = None) -> str:
    """Static stand-in for a secret value. Depends only on the handle name and field."""
    if field is None:
        return f"<secret:{handle.name}>"
    return f"<secret:{handle.name}#{field}>"


class SecretResolver:
    """
    Resolves SecretRefs on behalf of one executing identity.

    Literal values pass through untouched. Secret references get a read grant
    for the identity (once per secret), a deterministic placeholder, and one
    FetchCommand that writes the real value into the runtime secrets file at
    boot.
    """

    def __init__(self, identity: str):
        self.identity = identity
        self._granted: Set[str] = set()

    def resolve(self, name: str, ref: StringOrSecret) -> Tuple[str, List[FetchCommand]]:
        """
        Resolve one environment variable.

        Args:
            name: Target environment variable name
            ref: Literal, whole secret, or secret field

        Returns:
            (rendered value, fetch commands to emit)

        Raises:
            ResourceUnavailable: If the secret cannot be located or granted
        """
        ref = as_secret_ref(ref)

        if isinstance(ref, LiteralValue):
            return ref.value, []

        field = ref.field if isinstance(ref, SecretField) else None
        self._grant(ref.handle)
        command = FetchCommand(
            variable=name,
            secret_id=ref.handle.secret_id,
            project_id=ref.handle.project_id,
            field=field,
        )
        logger.debug(f"{name} deferred to boot time from {ref.handle.name}")
        return placeholder_for(ref.handle, field), [command]

    def _grant(self, handle: SecretHandle) -> None:
        if handle.name in self._granted:
            return
        handle.grant_read(self.identity)
        self._granted.add(handle.name)
