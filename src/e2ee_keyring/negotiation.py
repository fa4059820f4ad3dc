"""
Algorithm negotiation and classical-to-post-quantum migration.

Negotiation picks one algorithm every device in a conversation can use.
Migration adds records under the new algorithm next to the legacy ones, so
both stay active until an explicit `deactivate_legacy` once the whole fleet
is ready. Legacy records are deactivated, never deleted, so history sealed
under the legacy key stays readable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from .algorithms import LEGACY_ALGORITHM, Algorithm, AlgorithmFamily
from .asymmetric import KeyPair, generate_asymmetric_keypair, wrap_symmetric_key
from .crypto import generate_symmetric_key
from .distribution import DistributionWarning, KeyDistributor
from .errors import ConflictError, EncryptionError, MigrationNotReadyError, NegotiationError
from .events import EventSink, KeyEvent, KeyEventType, NullEventSink
from .lifecycle import KeyLifecycle
from .logger import get_logger
from .models import ConversationKeyState, Device, KeyRecord

logger = get_logger(__name__)

Capabilities = Union[Device, Iterable[Union[Algorithm, str]]]
KeyPairProvider = Callable[[Device, Algorithm], KeyPair]


def _capability_set(capabilities: Capabilities) -> frozenset:
    if isinstance(capabilities, Device):
        supported = capabilities.supported_algorithms
    else:
        supported = Algorithm.parse_many(capabilities)
    # A device that declares nothing is assumed to speak only the legacy algorithm
    return supported or frozenset({LEGACY_ALGORITHM})


def negotiate(
    capabilities: Iterable[Capabilities],
    family: Optional[AlgorithmFamily] = None,
) -> Algorithm:
    """
    Choose the algorithm for a set of devices.

    Prefers the hybrid algorithm when every device supports it, otherwise the
    strongest algorithm common to all, restricted to `family` if given.

    Raises:
        NegotiationError: If there are no devices or nothing is common to all
    """
    sets = [_capability_set(c) for c in capabilities]
    if not sets:
        raise NegotiationError("No devices to negotiate for")

    common = frozenset.intersection(*sets)
    if family is not None:
        common = frozenset(a for a in common if a.family is family)
    if not common:
        raise NegotiationError("No algorithm is supported by every device")

    if Algorithm.HYBRID_RSA_MLKEM768 in common:
        return Algorithm.HYBRID_RSA_MLKEM768
    return max(common, key=lambda a: a.rank)


class MigrationStrategy(Enum):
    """Which devices `migrate` moves onto the new algorithm."""

    GRADUAL = "gradual"  # capability and operational readiness flag
    CAPABLE = "capable"  # advertised capability alone


@dataclass
class ReadinessReport:
    conversation_id: str
    family: AlgorithmFamily
    overall_ready: bool
    per_device_ready: Dict[str, bool] = field(default_factory=dict)
    missing_capabilities: Dict[str, List[str]] = field(default_factory=dict)
    recommended_algorithm: Optional[Algorithm] = None

    @property
    def ready_devices(self) -> List[str]:
        return sorted(d for d, ready in self.per_device_ready.items() if ready)


@dataclass
class MigrationResult:
    """
    Outcome of one migration pass.

    `keypairs` holds the private keys issued for migrated devices; the caller
    must deliver each to its device and drop it.
    """

    conversation_id: str
    target: Algorithm
    strategy: MigrationStrategy
    symmetric_key: Optional[bytes] = field(default=None, repr=False)
    keypairs: Dict[str, KeyPair] = field(default_factory=dict, repr=False)
    records: List[KeyRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[DistributionWarning] = field(default_factory=list)

    @property
    def migrated_devices(self) -> List[str]:
        return sorted(self.keypairs)


def _capable(device: Device, family: AlgorithmFamily) -> bool:
    """Hybrid support counts as post-quantum capability."""
    families = {a.family for a in _capability_set(device)}
    if family is AlgorithmFamily.POST_QUANTUM:
        return bool(families & {AlgorithmFamily.POST_QUANTUM, AlgorithmFamily.HYBRID})
    return family in families


class AlgorithmCoordinator:
    """Readiness checks and coexisting-record migration for conversations."""

    def __init__(
        self,
        distributor: KeyDistributor,
        lifecycle: KeyLifecycle,
        events: Optional[EventSink] = None,
        require_operational_flag: bool = True,
    ) -> None:
        self._distributor = distributor
        self._lifecycle = lifecycle
        self._repository = lifecycle.repository
        self._events = events or NullEventSink()
        self.require_operational_flag = require_operational_flag

    async def _devices(self, conversation_id: str) -> List[Device]:
        devices = await self._repository.list_conversation_devices(conversation_id)
        return [d for d in devices if d.is_trusted]

    def _missing(self, device: Device, family: AlgorithmFamily) -> List[str]:
        missing = []
        if not _capable(device, family):
            missing.append(f"{family.value} capability")
        if (
            family.quantum_resistant
            and self.require_operational_flag
            and not device.quantum_ready
        ):
            missing.append("operational readiness flag")
        return missing

    def device_ready(self, device: Device, family: AlgorithmFamily = AlgorithmFamily.POST_QUANTUM) -> bool:
        return not self._missing(device, family)

    async def assess_readiness(
        self,
        conversation_id: str,
        family: AlgorithmFamily = AlgorithmFamily.POST_QUANTUM,
    ) -> ReadinessReport:
        """
        Report which trusted participant devices are ready for `family`.

        With `require_operational_flag` a device needs both the advertised
        capability and its readiness flag; otherwise capability alone.
        """
        devices = await self._devices(conversation_id)
        report = ReadinessReport(conversation_id, family, overall_ready=bool(devices))
        for device in devices:
            missing = self._missing(device, family)
            report.per_device_ready[device.device_id] = not missing
            if missing:
                report.missing_capabilities[device.device_id] = missing
                report.overall_ready = False

        try:
            if report.overall_ready:
                report.recommended_algorithm = self._negotiate_target(devices, family)
            elif devices:
                report.recommended_algorithm = negotiate(devices)
        except NegotiationError:
            report.recommended_algorithm = None

        logger.info(
            "readiness assessed conversation=%s family=%s ready=%s devices=%d missing=%d",
            conversation_id, family.value, report.overall_ready,
            len(devices), len(report.missing_capabilities),
        )
        return report

    @staticmethod
    def _negotiate_target(devices: List[Device], family: AlgorithmFamily) -> Algorithm:
        if family is AlgorithmFamily.POST_QUANTUM:
            try:
                return negotiate(devices, AlgorithmFamily.HYBRID)
            except NegotiationError:
                pass
        return negotiate(devices, family)

    async def migrate(
        self,
        conversation_id: str,
        strategy: MigrationStrategy = MigrationStrategy.GRADUAL,
        target: Optional[Algorithm] = None,
        keypair_provider: Optional[KeyPairProvider] = None,
    ) -> MigrationResult:
        """
        Give every eligible device holding an active classical record a new
        keypair and an active record under `target`, alongside the legacy one.

        A fresh conversation key is issued for `target`; devices that already
        held a `target` record are rotated onto it so the target algorithm has
        one key per conversation.

        Raises:
            NegotiationError: If no target is given and eligible devices share
                no quantum-resistant algorithm
            MigrationNotReadyError: If no target is given and no device is eligible
            KeyGenerationError: If a keypair cannot be issued
        """
        provider = keypair_provider or (lambda device, algorithm: generate_asymmetric_keypair(algorithm))
        devices = {d.device_id: d for d in await self._devices(conversation_id)}
        state = ConversationKeyState.from_records(
            conversation_id,
            await self._repository.list_records(conversation_id=conversation_id, active_only=True),
        )
        legacy_holders = state.devices_with_family(AlgorithmFamily.CLASSICAL)

        def eligible(device: Device) -> bool:
            if strategy is MigrationStrategy.GRADUAL:
                return self.device_ready(device)
            return _capable(device, AlgorithmFamily.POST_QUANTUM)

        candidates = [
            devices[d] for d in sorted(legacy_holders) if d in devices and eligible(devices[d])
        ]
        if not candidates and target is None:
            raise MigrationNotReadyError(f"No device in {conversation_id} is eligible for migration")
        if target is None:
            target = self._negotiate_target(candidates, AlgorithmFamily.POST_QUANTUM)
        if not target.family.quantum_resistant:
            raise NegotiationError(f"{target.value} is not a migration target")

        result = MigrationResult(conversation_id, target, strategy)
        result.skipped = sorted(
            d for d in legacy_holders if d not in {c.device_id for c in candidates}
        )
        pending = [
            d for d in candidates
            if d.supports(target) and state.active_record(d.device_id, target) is None
        ]
        result.skipped.extend(
            d.device_id for d in candidates if not d.supports(target)
        )
        if not pending:
            logger.info("migration found nothing to do conversation=%s target=%s", conversation_id, target.value)
            return result

        self._events.emit(
            KeyEvent(
                KeyEventType.MIGRATION_STARTED,
                conversation_id,
                {
                    "target": target.value,
                    "strategy": strategy.value,
                    "devices": [d.device_id for d in pending],
                },
            )
        )

        result.symmetric_key = generate_symmetric_key()
        for device in pending:
            result.keypairs[device.device_id] = provider(device, target)

        distributed = await self._distributor.distribute(
            conversation_id,
            result.symmetric_key,
            pending,
            public_keys={d: kp.public_key for d, kp in result.keypairs.items()},
        )
        result.records.extend(distributed.created)
        result.warnings.extend(distributed.warnings)
        for warning in distributed.warnings:
            result.keypairs.pop(warning.device_id, None)

        for existing in state.records:
            if existing.algorithm is not target or existing.device_id not in devices:
                continue
            try:
                wrapped = wrap_symmetric_key(result.symmetric_key, existing.public_key)
                result.records.append(await self._lifecycle.rotate(existing, wrapped))
            except (ConflictError, EncryptionError) as e:
                result.warnings.append(DistributionWarning(existing.device_id, str(e)))

        logger.info(
            "migration applied conversation=%s target=%s strategy=%s migrated=%d skipped=%d",
            conversation_id, target.value, strategy.value,
            len(result.keypairs), len(result.skipped),
        )
        return result

    async def deactivate_legacy(
        self,
        conversation_id: str,
        legacy_family: AlgorithmFamily = AlgorithmFamily.CLASSICAL,
        force: bool = False,
    ) -> List[KeyRecord]:
        """
        Retire every active `legacy_family` record of the conversation.

        Raises:
            MigrationNotReadyError: Unless `force`, when the fleet is not fully
                ready or some legacy device has no replacement record
        """
        records = await self._repository.list_records(
            conversation_id=conversation_id, active_only=True
        )
        state = ConversationKeyState.from_records(conversation_id, records)
        legacy = [r for r in state.records if r.algorithm.family is legacy_family]
        covered = {
            r.device_id for r in state.records if r.algorithm.family is not legacy_family
        }
        uncovered = sorted({r.device_id for r in legacy} - covered)

        if not force:
            report = await self.assess_readiness(conversation_id)
            if not report.overall_ready or uncovered:
                raise MigrationNotReadyError(
                    f"Cannot retire {legacy_family.value} keys in {conversation_id}: "
                    f"{len(report.missing_capabilities)} devices not ready, "
                    f"{len(uncovered)} without a replacement record"
                )

        retired = [await self._lifecycle.deactivate(record) for record in legacy]
        logger.warning(
            "legacy keys deactivated conversation=%s family=%s records=%d forced=%s",
            conversation_id, legacy_family.value, len(retired), force,
        )
        self._events.emit(
            KeyEvent(
                KeyEventType.LEGACY_DEACTIVATED,
                conversation_id,
                {
                    "family": legacy_family.value,
                    "records": len(retired),
                    "uncovered_devices": uncovered,
                    "forced": force,
                },
            )
        )
        return retired
