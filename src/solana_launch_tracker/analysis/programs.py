"""Registry of on-chain programs relevant to trade classification."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Mapping, Optional

from ..config.settings import ProgramRegistryConfig
from ..datalake.schemas import validate_address
from ..utils.constants import DEX_PROGRAM_IDS, LIQUIDITY_PROGRAM_IDS, SPL_TOKEN_PROGRAM_IDS


class ProgramRole(str, Enum):
    DEX = "dex"
    LIQUIDITY_POOL = "liquidity_pool"
    TOKEN = "token"


class ProgramRegistry:
    """Maps program ids to the role they play in a transaction.

    New venues are registered at runtime or through configuration instead of
    being hard-coded in the classifier.
    """

    def __init__(
        self,
        dex_programs: Optional[Mapping[str, str]] = None,
        liquidity_programs: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._roles: Dict[str, ProgramRole] = {}
        self._labels: Dict[str, str] = {}
        for program_id in SPL_TOKEN_PROGRAM_IDS:
            self._add(program_id, ProgramRole.TOKEN, "spl-token")
        for program_id, label in (DEX_PROGRAM_IDS if dex_programs is None else dex_programs).items():
            self._add(program_id, ProgramRole.DEX, label)
        for program_id, label in (LIQUIDITY_PROGRAM_IDS if liquidity_programs is None else liquidity_programs).items():
            self._add(program_id, ProgramRole.LIQUIDITY_POOL, label)

    @classmethod
    def from_config(cls, config: ProgramRegistryConfig) -> "ProgramRegistry":
        registry = cls()
        for program_id in config.extra_dex_program_ids:
            registry.register(program_id, ProgramRole.DEX)
        for program_id in config.extra_liquidity_program_ids:
            registry.register(program_id, ProgramRole.LIQUIDITY_POOL)
        return registry

    def register(self, program_id: str, role: ProgramRole, label: Optional[str] = None) -> None:
        validate_address(program_id, "program id")
        self._add(program_id, role, label)

    def _add(self, program_id: str, role: ProgramRole, label: Optional[str] = None) -> None:
        self._roles[program_id] = role
        self._labels[program_id] = label or program_id[:8]

    def role_of(self, program_id: str) -> Optional[ProgramRole]:
        return self._roles.get(program_id)

    def label_of(self, program_id: str) -> Optional[str]:
        return self._labels.get(program_id)

    def has_role(self, program_ids: Iterable[str], role: ProgramRole) -> bool:
        return any(self._roles.get(program_id) == role for program_id in program_ids)

    def is_dex(self, program_id: str) -> bool:
        return self._roles.get(program_id) == ProgramRole.DEX

    def is_liquidity_pool(self, program_id: str) -> bool:
        return self._roles.get(program_id) == ProgramRole.LIQUIDITY_POOL

    def is_token_program(self, program_id: str) -> bool:
        return self._roles.get(program_id) == ProgramRole.TOKEN


__all__ = ["ProgramRegistry", "ProgramRole"]
