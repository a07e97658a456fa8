"""Detection of new token mints created through the monitored launch program."""

from __future__ import annotations

from typing import Optional

from ..datalake.schemas import TokenLaunch, ValidationFailure
from ..analysis.transactions import InstructionKind, ParsedTransaction
from ..monitoring.logger import get_logger
from ..utils.constants import utc_now


class LaunchDetector:
    """Finds a launch in a transaction emitted by the monitored program.

    A launchpad ``create`` instruction takes precedence because it carries the
    token name and symbol; otherwise an SPL ``initializeMint`` marks the launch.
    """

    def __init__(self, program_id: str) -> None:
        self._program_id = program_id
        self._logger = get_logger(__name__)

    def detect(self, transaction: ParsedTransaction) -> Optional[TokenLaunch]:
        if transaction.failed or self._program_id not in transaction.program_ids:
            return None
        created_at = transaction.block_time or utc_now()
        initialize = None
        for ix in transaction.instructions:
            if ix.kind == InstructionKind.LAUNCH_CREATE:
                return self._launch(
                    transaction,
                    ix.mint,
                    creator=ix.creator or transaction.fee_payer,
                    created_at=created_at,
                    name=ix.name,
                    symbol=ix.symbol,
                    source="launch_create",
                )
            if ix.kind == InstructionKind.INITIALIZE_MINT and initialize is None:
                initialize = ix
        if initialize is None:
            return None
        return self._launch(
            transaction,
            initialize.mint,
            creator=transaction.fee_payer,
            created_at=created_at,
            decimals=initialize.decimals,
            source="initialize_mint",
        )

    def _launch(self, transaction: ParsedTransaction, mint: str, **fields) -> Optional[TokenLaunch]:
        name = fields.pop("name", None) or "Unknown Token"
        symbol = fields.pop("symbol", None) or "UNKNOWN"
        try:
            return TokenLaunch(mint=mint, signature=transaction.signature, name=name, symbol=symbol, **fields)
        except ValidationFailure as exc:
            self._logger.warning("Ignoring launch in %s: %s", transaction.signature, exc)
            return None


__all__ = ["LaunchDetector"]
