"""Commit/reveal orchestration for a single rune etching.

One :class:`EtchingOrchestrator` drives exactly one etching through its
phases::

    IDLE -> AWAITING_PAYMENT -> FUNDING_OBSERVED -> REVEALING -> SUCCEEDED
                                                             \\-> FAILED

Waiting for payment is caller-driven: :meth:`EtchingOrchestrator.poll_funding`
raises :class:`PendingFunding` until a confirmed output appears and the caller
decides how often to ask again. The orchestrator owns no timers or threads.
Signing and broadcasting are delegated to a :class:`~rune_etcher.signers.Signer`
and a :class:`~rune_etcher.providers.DataProvider`; their calls are the only
points where the flow blocks.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import EtcherConfig
from .envelope import runestone_script
from .fees import FeeSplit, compute_fee_split
from .model import (
    DUST_THRESHOLD,
    MAX_SERVICE_FEE,
    MIN_SERVICE_FEE,
    SERVICE_FEE_BPS,
    CommitState,
    EtchingSpec,
    FundingOutpoint,
    Network,
    RevealResult,
    Utxo,
)
from .providers import DataProvider, ProviderError, ProviderRejected, ProviderTimeout
from .runestone import serialize_etching
from .signers import SignedTransaction, Signer, SignerError, SignerTimeout
from .transaction import RevealTransaction, TxInput, TxOutput, address_to_script

logger = logging.getLogger(__name__)


class EtchingError(RuntimeError):
    """Base class for orchestration failures.

    ``transient`` is true when repeating the same step may succeed without
    changing any input.
    """

    transient = False

    def __init__(self, message: str, *, transient: bool | None = None) -> None:
        super().__init__(message)
        if transient is not None:
            self.transient = transient


class SignerUnavailable(EtchingError):
    """Raised when the signer cannot issue a key or sign the reveal."""


class InsufficientFunds(EtchingError):
    """Raised when the funding output cannot cover fees above the dust threshold."""


class BroadcastRejected(EtchingError):
    """Raised when the network definitively refuses the reveal."""


class NetworkTimeout(EtchingError):
    """Raised when a provider or signer call timed out."""

    transient = True


class EtchingStateError(EtchingError):
    """Raised when an operation is invoked from the wrong phase."""


class RevealInFlight(EtchingStateError):
    """Raised when a second reveal is attempted while one is running."""

    transient = True


class PendingFunding(Exception):
    """The commit address has no confirmed output yet; poll again later."""

    def __init__(self, address: str, unconfirmed: int = 0) -> None:
        detail = f" ({unconfirmed} unconfirmed)" if unconfirmed else ""
        super().__init__(f"waiting for a confirmed payment to {address}{detail}")
        self.address = address
        self.unconfirmed = unconfirmed


class EtchingPhase(Enum):
    IDLE = "idle"
    AWAITING_PAYMENT = "awaiting_payment"
    FUNDING_OBSERVED = "funding_observed"
    REVEALING = "revealing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class EtchingSettings:
    """Fee policy and service fee destination for reveals."""

    service_fee_address: str
    min_service_fee: int = MIN_SERVICE_FEE
    max_service_fee: int = MAX_SERVICE_FEE
    service_fee_bps: int = SERVICE_FEE_BPS
    dust_threshold: int = DUST_THRESHOLD

    @classmethod
    def from_config(cls, config: EtcherConfig) -> "EtchingSettings":
        return cls(
            service_fee_address=config.service_fee_address,
            min_service_fee=config.min_service_fee,
            max_service_fee=config.max_service_fee,
            service_fee_bps=config.service_fee_bps,
            dust_threshold=config.dust_threshold,
        )


def select_funding(utxos: list[Utxo]) -> Optional[Utxo]:
    """Return the confirmed output with the greatest value, first seen on ties."""

    best: Optional[Utxo] = None
    for utxo in utxos:
        if not utxo.confirmed:
            continue
        if best is None or utxo.value > best.value:
            best = utxo
    return best


class EtchingOrchestrator:
    """State machine for one commit/reveal etching run."""

    def __init__(
        self,
        signer: Signer,
        provider: DataProvider,
        network: Network,
        settings: EtchingSettings,
    ) -> None:
        self.signer = signer
        self.provider = provider
        self.network = network
        self.settings = settings
        self.phase = EtchingPhase.IDLE
        self.commit: CommitState | None = None
        self.failed_during: str | None = None
        self.last_error: BaseException | None = None
        self.result: RevealResult | None = None
        self.reveal_template: RevealTransaction | None = None
        self._signed: SignedTransaction | None = None
        self._fee_split: FeeSplit | None = None
        self._recipient_value: int | None = None
        self._reveal_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Phase bookkeeping
    # ------------------------------------------------------------------
    def _transition(self, phase: EtchingPhase) -> None:
        if phase is self.phase:
            return
        logger.info(
            "Etching phase %s -> %s",
            self.phase.value,
            phase.value,
            extra={"network": self.network.value},
        )
        self.phase = phase

    def _require(self, *phases: EtchingPhase) -> None:
        if self.phase not in phases:
            expected = " or ".join(phase.value for phase in phases)
            raise EtchingStateError(f"operation requires phase {expected}, current phase is {self.phase.value}")

    def _fail(self, during: str, error: BaseException) -> None:
        self.failed_during = during
        self.last_error = error
        self._transition(EtchingPhase.FAILED)

    @property
    def has_signed_transaction(self) -> bool:
        return self._signed is not None

    # ------------------------------------------------------------------
    # Commit phase
    # ------------------------------------------------------------------
    def begin_commit(self) -> CommitState:
        """Ask the signer for a fresh commit destination."""

        self._require(EtchingPhase.IDLE)
        try:
            grant = self.signer.request_key(self.network)
        except SignerTimeout as exc:
            error = NetworkTimeout(f"signer timed out issuing a commit key: {exc}")
            self._fail("commit", error)
            raise error from exc
        except SignerError as exc:
            error = SignerUnavailable(f"signer could not issue a commit key: {exc}", transient=True)
            self._fail("commit", error)
            raise error from exc

        self.commit = CommitState(
            commit_address=grant.address,
            key_handle=grant.key_handle,
            network=self.network,
        )
        logger.info(
            "Commit address issued: %s",
            grant.address,
            extra={"network": self.network.value},
        )
        self._transition(EtchingPhase.AWAITING_PAYMENT)
        return self.commit

    def poll_funding(self) -> FundingOutpoint:
        """Check the commit address once and select the funding output.

        Raises :class:`PendingFunding` while no confirmed output exists; the
        orchestrator stays in AWAITING_PAYMENT.
        """

        self._require(EtchingPhase.AWAITING_PAYMENT)
        assert self.commit is not None
        address = self.commit.commit_address
        try:
            utxos = self.provider.list_unspent(address, self.network)
        except ProviderTimeout as exc:
            error = NetworkTimeout(f"timed out listing outputs for {address}: {exc}")
            self._fail("commit", error)
            raise error from exc
        except ProviderError as exc:
            error = EtchingError(f"could not list outputs for {address}: {exc}", transient=True)
            self._fail("commit", error)
            raise error from exc

        chosen = select_funding(utxos)
        if chosen is None:
            unconfirmed = sum(1 for utxo in utxos if not utxo.confirmed)
            logger.debug(
                "No confirmed funding yet",
                extra={"address": address, "unconfirmed": unconfirmed},
            )
            raise PendingFunding(address, unconfirmed)

        self.commit.funding = FundingOutpoint.from_utxo(chosen)
        logger.info(
            "Funding observed %s:%d (%d sats)",
            chosen.txid,
            chosen.vout,
            chosen.value,
            extra={"address": address},
        )
        self._transition(EtchingPhase.FUNDING_OBSERVED)
        return self.commit.funding

    # ------------------------------------------------------------------
    # Reveal phase
    # ------------------------------------------------------------------
    def build_template(
        self,
        payload: bytes,
        recipient_address: str,
        *,
        service_fee: int = 0,
        recipient_value: int = 0,
    ) -> RevealTransaction:
        """Return the unsigned reveal spending the funding output.

        Output values do not change the serialized size, so a zero-valued
        template is enough for fee estimation.
        """

        if self.commit is None or self.commit.funding is None:
            raise EtchingStateError("no funding output has been observed")
        funding = self.commit.funding
        return RevealTransaction(
            network=self.network,
            inputs=[
                TxInput(
                    txid=funding.txid,
                    vout=funding.vout,
                    value=funding.value,
                    script_pubkey=address_to_script(self.commit.commit_address, self.network),
                )
            ],
            outputs=[
                TxOutput(value=0, script_pubkey=runestone_script(payload), label="runestone"),
                TxOutput(
                    value=service_fee,
                    script_pubkey=address_to_script(self.settings.service_fee_address, self.network),
                    label="service_fee",
                    address=self.settings.service_fee_address,
                ),
                TxOutput(
                    value=recipient_value,
                    script_pubkey=address_to_script(recipient_address, self.network),
                    label="recipient",
                    address=recipient_address,
                ),
            ],
        )

    def build_reveal(self, spec: EtchingSpec, fee_rate_sat_vb: float, recipient_address: str) -> RevealResult:
        """Build, sign and broadcast the reveal transaction.

        The payload, addresses and fee split are all settled before the signer
        is contacted. A failure after signing keeps the signed transaction so
        :meth:`rebroadcast` can submit it again.
        """

        if not self._reveal_lock.acquire(blocking=False):
            raise RevealInFlight("a reveal is already in flight for this commit")
        try:
            if self.phase is EtchingPhase.REVEALING:
                raise RevealInFlight("a reveal is already in flight for this commit")
            self._require(EtchingPhase.FUNDING_OBSERVED)
            assert self.commit is not None and self.commit.funding is not None

            # Codec and address errors surface here, before any signing request.
            payload = serialize_etching(spec)
            template = self.build_template(payload, recipient_address)

            self._transition(EtchingPhase.REVEALING)
            try:
                return self._reveal(payload, recipient_address, template.estimate_vsize(), fee_rate_sat_vb)
            except Exception as exc:
                self._fail("reveal", exc)
                raise
        finally:
            self._reveal_lock.release()

    def _reveal(self, payload: bytes, recipient_address: str, vsize: int, fee_rate_sat_vb: float) -> RevealResult:
        assert self.commit is not None and self.commit.funding is not None
        funding_value = self.commit.funding.value

        split = compute_fee_split(
            vsize,
            fee_rate_sat_vb,
            min_service_fee=self.settings.min_service_fee,
            max_service_fee=self.settings.max_service_fee,
            service_fee_bps=self.settings.service_fee_bps,
        )
        recipient_value = funding_value - split.miner_fee - split.service_fee
        logger.info(
            "Reveal fees: vsize=%d rate=%.2f sat/vB miner=%d service=%d recipient=%d",
            vsize,
            fee_rate_sat_vb,
            split.miner_fee,
            split.service_fee,
            recipient_value,
        )
        if recipient_value <= self.settings.dust_threshold:
            raise InsufficientFunds(
                f"funding of {funding_value} sats leaves {recipient_value} sats after "
                f"{split.miner_fee} miner and {split.service_fee} service fees; "
                f"the recipient output must exceed {self.settings.dust_threshold} sats"
            )

        template = self.build_template(
            payload,
            recipient_address,
            service_fee=split.service_fee,
            recipient_value=recipient_value,
        )
        self.reveal_template = template
        try:
            signed = self.signer.sign(template, self.commit.key_handle)
        except SignerTimeout as exc:
            raise NetworkTimeout(f"signer timed out: {exc}") from exc
        except SignerError as exc:
            raise SignerUnavailable(f"signer refused the reveal: {exc}", transient=True) from exc

        self._signed = signed
        self._fee_split = split
        self._recipient_value = recipient_value
        return self._broadcast()

    def _broadcast(self) -> RevealResult:
        assert self._signed is not None and self._fee_split is not None
        try:
            txid = self.provider.broadcast(self._signed.raw_hex)
        except ProviderTimeout as exc:
            raise NetworkTimeout(f"broadcast timed out: {exc}") from exc
        except ProviderRejected as exc:
            raise BroadcastRejected(f"reveal rejected: {exc}") from exc
        except ProviderError as exc:
            raise EtchingError(f"broadcast failed: {exc}", transient=True) from exc

        self.result = RevealResult(
            transaction_id=txid,
            total_fee=self._fee_split.total_fee,
            miner_fee=self._fee_split.miner_fee,
            service_fee=self._fee_split.service_fee,
            recipient_value=self._recipient_value or 0,
        )
        logger.info("Reveal broadcast: %s", txid)
        self._transition(EtchingPhase.SUCCEEDED)
        return self.result

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def rebroadcast(self) -> RevealResult:
        """Submit the already-signed reveal again without re-signing."""

        if not self._reveal_lock.acquire(blocking=False):
            raise RevealInFlight("a reveal is already in flight for this commit")
        try:
            self._require(EtchingPhase.FAILED)
            if self._signed is None:
                raise EtchingStateError("no signed reveal is available to rebroadcast")
            self._transition(EtchingPhase.REVEALING)
            try:
                return self._broadcast()
            except Exception as exc:
                self._fail("reveal", exc)
                raise
        finally:
            self._reveal_lock.release()

    def retry(self) -> EtchingPhase:
        """Follow the retry edge out of FAILED.

        A commit-phase failure returns to AWAITING_PAYMENT, or to IDLE when no
        commit address was issued. A reveal-phase failure returns to
        FUNDING_OBSERVED with the funding output kept; the retained signed
        transaction is discarded so the reveal is built afresh.
        """

        self._require(EtchingPhase.FAILED)
        if self.failed_during == "reveal":
            self._signed = None
            self._fee_split = None
            self._recipient_value = None
            target = EtchingPhase.FUNDING_OBSERVED
        elif self.commit is None:
            target = EtchingPhase.IDLE
        else:
            target = EtchingPhase.AWAITING_PAYMENT
        self.failed_during = None
        self.last_error = None
        self._transition(target)
        return target
