"""
KeySpace: logical references to physical key tuples.

Layout under the root prefix, per dependent kind:

    <root>/<principal>/<owner_id>               principal record
    <root>/<primary>/<id>                       dependent record
    <root>/<forward>/<owner_id>/<id>            forward entry (sentinel mode)
    <root>/<forward>/<owner_id>                 forward set (set mode)
    <root>/<reverse>/<id>                       reverse pointer -> owner_id

All methods are pure. Ids are not validated here; the engine rejects
empty ids before any key is built.
"""

from __future__ import annotations

from dataclasses import dataclass

from kvlink.core import constants as C
from kvlink.core.types import Key


@dataclass(frozen=True, slots=True)
class KindLayout:
    """Sub-prefixes for one dependent kind."""

    primary: Key
    forward: Key
    reverse: Key


SESSION_LAYOUT = KindLayout(
    primary=C.SESSION_PRIMARY_PREFIX,
    forward=C.SESSION_FORWARD_PREFIX,
    reverse=C.SESSION_REVERSE_PREFIX,
)

KEY_LAYOUT = KindLayout(
    primary=C.KEY_PRIMARY_PREFIX,
    forward=C.KEY_FORWARD_PREFIX,
    reverse=C.KEY_REVERSE_PREFIX,
)


@dataclass(frozen=True, slots=True)
class KeySpace:
    """Root prefix plus the shared principal namespace."""

    root: Key = C.DEFAULT_ROOT_PREFIX
    principal: Key = C.PRINCIPAL_PREFIX

    def principal_prefix(self) -> Key:
        return self.root + self.principal

    def principal_key(self, owner_id: str) -> Key:
        return self.principal_prefix() + (owner_id,)

    def for_kind(self, layout: KindLayout) -> DependentKeys:
        return DependentKeys(space=self, layout=layout)


@dataclass(frozen=True, slots=True)
class DependentKeys:
    """Key builders for one dependent kind."""

    space: KeySpace
    layout: KindLayout

    def principal_key(self, owner_id: str) -> Key:
        return self.space.principal_key(owner_id)

    # -------------------------------------------------------------------------
    # Prefixes
    # -------------------------------------------------------------------------

    def primary_prefix(self) -> Key:
        return self.space.root + self.layout.primary

    def forward_root(self) -> Key:
        return self.space.root + self.layout.forward

    def reverse_prefix(self) -> Key:
        return self.space.root + self.layout.reverse

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def primary_key(self, dependent_id: str) -> Key:
        return self.primary_prefix() + (dependent_id,)

    def forward_prefix(self, owner_id: str) -> Key:
        return self.forward_root() + (owner_id,)

    def forward_set_key(self, owner_id: str) -> Key:
        return self.forward_prefix(owner_id)

    def forward_entry_key(self, owner_id: str, dependent_id: str) -> Key:
        return self.forward_prefix(owner_id) + (dependent_id,)

    def reverse_key(self, dependent_id: str) -> Key:
        return self.reverse_prefix() + (dependent_id,)
