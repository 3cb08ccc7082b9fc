"""
Payments module for cl-circle

Outbound value transfer for payouts and protocol fee withdrawal.

The ledger calls a transfer object as the last step of a payout, inside
the database transaction. A transfer either returns normally (value sent)
or raises TransferFailed, which rolls the whole payout back.

Payouts use keysend so recipients do not need to publish an invoice or
offer; the recipient id is the destination node pubkey.
"""

from typing import Any, Dict, List, Optional

from pyln.client import RpcError

from .errors import TransferFailed


class KeysendTransfer:
    """Send sats to a node with a spontaneous keysend payment."""

    def __init__(self, rpc, plugin=None, maxfeepercent: Optional[float] = None):
        """
        Args:
            rpc: Lightning RPC (plugin.rpc)
            plugin: Plugin instance for logging (optional)
            maxfeepercent: Optional routing fee cap passed to keysend
        """
        self.rpc = rpc
        self.plugin = plugin
        self.maxfeepercent = maxfeepercent

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            self.plugin.log(f"[Payments] {msg}", level=level)

    def __call__(self, recipient: str, amount_sats: int) -> Dict[str, Any]:
        """
        Pay `amount_sats` to `recipient`.

        Returns:
            The keysend result on completion

        Raises:
            TransferFailed: on RPC error or a non-complete payment status
        """
        if amount_sats <= 0:
            raise TransferFailed(f"Refusing to send {amount_sats} sats")

        params: Dict[str, Any] = {
            "destination": recipient,
            "amount_msat": amount_sats * 1000,
        }
        if self.maxfeepercent is not None:
            params["maxfeepercent"] = self.maxfeepercent

        try:
            result = self.rpc.keysend(**params)
        except RpcError as e:
            message = e.error.get("message", str(e)) if isinstance(e.error, dict) else str(e)
            self._log(f"Keysend to {recipient[:16]}... failed: {message}", level='warn')
            raise TransferFailed(f"keysend failed: {message}") from e

        if result.get("status") != "complete":
            self._log(
                f"Keysend to {recipient[:16]}... not complete: {result.get('status')}",
                level='warn'
            )
            raise TransferFailed(f"keysend status {result.get('status')}")

        self._log(f"Sent {amount_sats} sats to {recipient[:16]}... ({result.get('payment_hash')})")
        return result


class RecordingTransfer:
    """
    Transfer that only records what would be sent.

    Used when the plugin runs in dry-run mode (no funds leave the node)
    and as a test double.
    """

    def __init__(self):
        self.transfers: List[Dict[str, Any]] = []

    def __call__(self, recipient: str, amount_sats: int) -> Dict[str, Any]:
        if amount_sats <= 0:
            raise TransferFailed(f"Refusing to send {amount_sats} sats")
        record = {"recipient": recipient, "amount_sats": amount_sats, "status": "recorded"}
        self.transfers.append(record)
        return record
