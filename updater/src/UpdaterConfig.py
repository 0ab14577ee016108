"""UpdaterConfig: Static configuration document resolved for one worker.

The document is JSON, shared by every worker of a deployment. Any value that
differs between workers is written either as a scalar or as a mapping keyed
by worker index, with an optional ``"default"`` entry:

.. code-block:: json

    {"pollingIntervalMs": {"1": 1000, "2": 4000, "default": 10000}}

:func:`load_config` resolves every such value once for the given worker and
returns frozen dataclasses. Nothing downstream reads the raw document or the
worker index from process-wide state.

Strings of the form ``$ENV{NAME}`` are substituted from the environment
(unset variables become empty strings) before resolution.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from web3 import Web3

from .EndpointSelector import Endpoint, EndpointEntry, EndpointMode, rank_endpoints
from .errors import ConfigInvalid

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$ENV\{([A-Za-z_][A-Za-z0-9_]*)\}")
_FEED_ID_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

DEFAULT_UPTIME_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class WorkerIdentity:
    """Identity of this worker process within a redundant fleet.

    :ivar index: 1-based worker index. Worker 1 is the primary.
    """

    index: int

    def __post_init__(self) -> None:
        if not isinstance(self.index, int) or self.index < 1:
            raise ConfigInvalid(f"Worker index must be a positive integer, got {self.index!r}")

    @property
    def is_primary(self) -> bool:
        return self.index == 1

    def __str__(self) -> str:
        return f"worker-{self.index}"


@dataclass(frozen=True)
class Rational:
    """Integer multiplier expressed as ``dividend / divisor``.

    .. code-block:: python

        >>> Rational(125, 100).apply(1000)
        1250
    """

    dividend: int
    divisor: int

    def __post_init__(self) -> None:
        if not isinstance(self.dividend, int) or not isinstance(self.divisor, int):
            raise ConfigInvalid(
                f"Rational parts must be integers, got {self.dividend!r}/{self.divisor!r}"
            )
        if self.divisor <= 0:
            raise ConfigInvalid(f"Rational divisor must be positive, got {self.divisor}")
        if self.dividend < 0:
            raise ConfigInvalid(f"Rational dividend must not be negative, got {self.dividend}")

    def apply(self, value: int) -> int:
        """Scale an integer value, rounding down.

        :param value: Value to scale (e.g. a fee in wei).
        :returns: ``floor(value * dividend / divisor)``.
        """
        return value * self.dividend // self.divisor

    def __str__(self) -> str:
        return f"{self.dividend}/{self.divisor}"


@dataclass(frozen=True)
class FixedGasLimit:
    """Use a configured gas limit without estimating."""

    value: int


@dataclass(frozen=True)
class EstimatedGasLimit:
    """Estimate the gas limit and scale it by a multiplier."""

    multiplier: Rational


GasLimitPolicy = FixedGasLimit | EstimatedGasLimit


@dataclass(frozen=True)
class FixedUpdateFee:
    """Send a fixed amount of wei per feed instead of querying the update fee."""

    amount: int


FeeOverride = FixedUpdateFee | None


class TxType(int, Enum):
    LEGACY = 0
    EIP1559 = 2


@dataclass(frozen=True)
class Eip1559Config:
    """Fee-history based pricing parameters.

    :ivar percentile: Percentile of historical fees to bid at.
    :ivar historical_blocks: Number of recent blocks to sample.
    :ivar base_fee_multiplier: Headroom applied to the sampled base fee.
    """

    percentile: int = 75
    historical_blocks: int = 20
    base_fee_multiplier: Rational = Rational(125, 100)


@dataclass(frozen=True)
class TxConfig:
    """Transaction parameters shared by all batches on one chain."""

    gas_limit_policy: GasLimitPolicy
    tx_type: TxType
    eip1559: Eip1559Config
    gas_price_multiplier: Rational
    confirmation_polling_interval_ms: int
    confirmation_timeout_ms: int
    required_confirmations: int
    transaction_timeout_ms: int


@dataclass(frozen=True)
class FeedConfig:
    """A single price series pushed to an oracle contract.

    :ivar address: 32-byte Pyth price id (0x-prefixed hex).
    :ivar oracle_address: Contract that receives the update.
    :ivar batch_id: Identifier of the batch the feed belongs to.
    :ivar description: Human-readable name (e.g. "WETH/USD").
    :ivar heartbeat_seconds: Maximum age before a forced update.
    :ivar update_threshold_bips: Deviation that forces an update.
    :ivar early_update_seconds: Optional window before heartbeat expiry in
        which an update is allowed without deviation.
    :ivar update_fee: Optional fixed update fee.
    """

    address: str
    oracle_address: str
    batch_id: str
    description: str
    heartbeat_seconds: int
    update_threshold_bips: int
    early_update_seconds: int | None = None
    update_fee: FeeOverride = None


@dataclass(frozen=True)
class OracleConfig:
    address: str
    feeds: tuple[FeedConfig, ...]


@dataclass(frozen=True)
class BatchConfig:
    """Atomic unit of submission: all member feeds go in one transaction."""

    batch_id: str
    feeds: tuple[FeedConfig, ...]
    polling_interval_ms: int
    write_delay_ms: int
    customer_id: str | None = None


@dataclass(frozen=True)
class ChainConfig:
    name: str
    rpc_url: str
    tx_config: TxConfig
    multicall_address: str
    pyth_address: str
    oracles: tuple[OracleConfig, ...]
    batches: tuple[BatchConfig, ...]
    chain_id: int | None = None
    uptime_webhook_url: str | None = None
    uptime_interval_seconds: int = DEFAULT_UPTIME_INTERVAL_SECONDS


@dataclass(frozen=True)
class LogSinkConfig:
    """A remote log sink. ``kind`` is ``"datadog"`` or ``"logtail"``."""

    kind: str
    source_token: str
    level: str = "info"
    region: str | None = None


@dataclass(frozen=True)
class UpdaterConfig:
    worker: WorkerIdentity
    endpoints: tuple[Endpoint, ...]
    chains: dict[str, ChainConfig]
    http_cache_seconds: int = 0
    onchain_cache_ttl_seconds: float = 0.0
    log_sinks: tuple[LogSinkConfig, ...] = field(default_factory=tuple)


def substitute_env(value: Any, environ: Mapping[str, str]) -> Any:
    """Recursively replace ``$ENV{NAME}`` references in a parsed document.

    :param value: Parsed JSON value.
    :param environ: Environment mapping to read from.
    :returns: Copy of the value with references substituted.
    """
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [substitute_env(v, environ) for v in value]
    if isinstance(value, dict):
        return {k: substitute_env(v, environ) for k, v in value.items()}
    return value


def _is_per_worker(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and len(value) > 0
        and all(k == "default" or str(k).isdigit() for k in value)
    )


def resolve_for_worker(value: Any, worker: WorkerIdentity) -> Any:
    """Resolve a scalar-or-per-worker value for the given worker.

    :param value: A scalar, or a mapping of worker index to value.
    :param worker: Worker to resolve for.
    :returns: The worker's value, the ``"default"`` entry, or None.
    """
    if not _is_per_worker(value):
        return value
    key = str(worker.index)
    if key in value:
        return value[key]
    return value.get("default")


def _expect_object(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        raise ConfigInvalid(f"{where}: expected an object, got {value!r}")
    return value


def _expect_list(value: Any, where: str) -> list:
    if not isinstance(value, list):
        raise ConfigInvalid(f"{where}: expected a list, got {value!r}")
    return value


def _get(raw: Mapping[str, Any], key: str, where: str, worker: WorkerIdentity,
         default: Any = ..., kind: type | tuple[type, ...] | None = None) -> Any:
    value = resolve_for_worker(raw.get(key), worker)
    if value is None or value == "":
        if default is ...:
            raise ConfigInvalid(f"{where}: missing required field '{key}'")
        return default
    if kind is not None and (not isinstance(value, kind) or isinstance(value, bool)):
        raise ConfigInvalid(f"{where}: field '{key}' has invalid value {value!r}")
    return value


def _parse_rational(raw: Any, where: str, worker: WorkerIdentity) -> Rational:
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"{where}: expected {{dividend, divisor}}, got {raw!r}")
    dividend = _get(raw, "dividend", where, worker, kind=int)
    step = _get(raw, "dividendStep", where, worker, default=0, kind=int)
    divisor = _get(raw, "divisor", where, worker, kind=int)
    try:
        return Rational(dividend + step * (worker.index - 1), divisor)
    except ConfigInvalid as e:
        raise ConfigInvalid(f"{where}: {e}") from e


def _parse_address(value: Any, where: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ConfigInvalid(f"{where}: invalid address {value!r}")
    return Web3.to_checksum_address(value)


def _parse_endpoints(raw: Any, worker: WorkerIdentity) -> tuple[Endpoint, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigInvalid("pythHermesEndpoints: at least one endpoint is required")

    entries: list[EndpointEntry] = []
    for i, item in enumerate(raw):
        where = f"pythHermesEndpoints[{i}]"
        if not isinstance(item, dict):
            raise ConfigInvalid(f"{where}: expected an object")
        priority_raw = item.get("priority", 1)
        if isinstance(priority_raw, dict) and not _is_per_worker(priority_raw):
            raise ConfigInvalid(f"{where}: priority must be keyed by worker index")
        try:
            mode = EndpointMode.parse(item.get("mode", "both"))
        except ValueError as e:
            raise ConfigInvalid(f"{where}: {e}") from e
        entries.append(
            EndpointEntry(
                name=_get(item, "name", where, worker, kind=str),
                url=item.get("url") or "",
                mode=mode,
                priority=priority_raw,
            )
        )

    try:
        ranked = rank_endpoints(entries, worker)
    except (TypeError, ValueError) as e:
        raise ConfigInvalid(f"pythHermesEndpoints: {e}") from e
    if not ranked:
        raise ConfigInvalid("pythHermesEndpoints: no endpoint has a URL")
    return tuple(ranked)


def _parse_tx_config(raw: Any, where: str, worker: WorkerIdentity) -> TxConfig:
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"{where}: expected an object")

    fixed_gas_limit = _get(raw, "gasLimit", where, worker, default=None, kind=int)
    if fixed_gas_limit is not None:
        if fixed_gas_limit <= 0:
            raise ConfigInvalid(f"{where}: gasLimit must be positive")
        gas_limit_policy: GasLimitPolicy = FixedGasLimit(fixed_gas_limit)
    else:
        gas_limit_policy = EstimatedGasLimit(
            _parse_rational(
                raw.get("gasLimitMultiplier", {"dividend": 1, "divisor": 1}),
                f"{where}.gasLimitMultiplier",
                worker,
            )
        )

    try:
        tx_type = TxType(_get(raw, "txType", where, worker, default=2, kind=int))
    except ValueError as e:
        raise ConfigInvalid(f"{where}: unsupported txType ({e})") from e

    eip_where = f"{where}.eip1559"
    eip_raw = _expect_object(raw.get("eip1559", {}), eip_where)
    eip1559 = Eip1559Config(
        percentile=_get(eip_raw, "percentile", eip_where, worker, default=75, kind=int),
        historical_blocks=_get(
            eip_raw, "historicalBlocks", eip_where, worker, default=20, kind=int
        ),
        base_fee_multiplier=_parse_rational(
            eip_raw.get("baseFeeMultiplier", {"dividend": 1, "divisor": 1}),
            f"{eip_where}.baseFeeMultiplier",
            worker,
        ),
    )
    if not 0 <= eip1559.percentile <= 100:
        raise ConfigInvalid(f"{eip_where}: percentile must be within [0, 100]")
    if eip1559.historical_blocks < 1:
        raise ConfigInvalid(f"{eip_where}: historicalBlocks must be at least 1")

    tx_config = TxConfig(
        gas_limit_policy=gas_limit_policy,
        tx_type=tx_type,
        eip1559=eip1559,
        gas_price_multiplier=_parse_rational(
            raw.get("gasPriceMultiplier", {"dividend": 1, "divisor": 1}),
            f"{where}.gasPriceMultiplier",
            worker,
        ),
        confirmation_polling_interval_ms=_get(
            raw, "confirmationPollingIntervalMs", where, worker, default=1000, kind=int
        ),
        confirmation_timeout_ms=_get(
            raw, "confirmationTimeoutMs", where, worker, default=30_000, kind=int
        ),
        required_confirmations=_get(
            raw, "requiredConfirmations", where, worker, default=1, kind=int
        ),
        transaction_timeout_ms=_get(
            raw, "transactionTimeoutMs", where, worker, default=30_000, kind=int
        ),
    )
    if tx_config.confirmation_polling_interval_ms <= 0:
        raise ConfigInvalid(f"{where}: confirmationPollingIntervalMs must be positive")
    if tx_config.required_confirmations < 1:
        raise ConfigInvalid(f"{where}: requiredConfirmations must be at least 1")
    return tx_config


def _parse_write_delay(raw: dict, where: str, worker: WorkerIdentity) -> int:
    if "writeDelayStepMs" in raw:
        step = _get(raw, "writeDelayStepMs", where, worker, kind=int)
        if step < 0:
            raise ConfigInvalid(f"{where}: writeDelayStepMs must not be negative")
        return step * (worker.index - 1)

    delays = raw.get("writeDelayMs")
    if delays is None:
        return 0
    table = delays if _is_per_worker(delays) else {"default": delays}
    for key, value in table.items():
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConfigInvalid(f"{where}: writeDelayMs has invalid value {value!r} for {key!r}")

    # One past the highest explicit index covers the "default" entry
    highest = max((int(k) for k in table if k != "default"), default=1)
    resolved = [
        resolve_for_worker(table, WorkerIdentity(i)) or 0 for i in range(1, highest + 2)
    ]
    for index, (before, after) in enumerate(zip(resolved, resolved[1:]), start=2):
        if after < before:
            raise ConfigInvalid(
                f"{where}: writeDelayMs must not decrease with worker index "
                f"(worker {index} gets {after}ms after {before}ms)"
            )
    if resolved[0] != 0:
        raise ConfigInvalid(f"{where}: worker 1 must have no write delay, got {resolved[0]}ms")

    return resolve_for_worker(table, worker) or 0


def _parse_feed(raw: Any, where: str, oracle_address: str, batch_ids: dict[str, str],
                worker: WorkerIdentity) -> FeedConfig:
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"{where}: expected an object")

    address = raw.get("address")
    if not isinstance(address, str) or not _FEED_ID_PATTERN.match(address):
        raise ConfigInvalid(f"{where}: invalid feed id {address!r}")

    batch_key = str(raw.get("batch"))
    if batch_key not in batch_ids:
        raise ConfigInvalid(f"{where}: unknown batch reference {raw.get('batch')!r}")

    extra = _expect_object(raw.get("extra", raw), f"{where}.extra")
    heartbeat = _get(extra, "heartbeat", where, worker, kind=int)
    threshold = _get(extra, "updateThreshold", where, worker, kind=int)
    early = _get(extra, "earlyUpdateTime", where, worker, default=None, kind=int)
    fee = _get(extra, "updateFee", where, worker, default=None, kind=int)

    if heartbeat <= 0:
        raise ConfigInvalid(f"{where}: heartbeat must be positive")
    if threshold < 0:
        raise ConfigInvalid(f"{where}: updateThreshold must not be negative")
    if early is not None and not 0 <= early < heartbeat:
        raise ConfigInvalid(f"{where}: earlyUpdateTime must be within [0, heartbeat)")
    if fee is not None and fee < 0:
        raise ConfigInvalid(f"{where}: updateFee must not be negative")

    return FeedConfig(
        address=address.lower(),
        oracle_address=oracle_address,
        batch_id=batch_ids[batch_key],
        description=extra.get("desc") or address[:10],
        heartbeat_seconds=heartbeat,
        update_threshold_bips=threshold,
        early_update_seconds=early,
        update_fee=FixedUpdateFee(fee) if fee is not None else None,
    )


def _parse_chain(name: str, raw: Any, worker: WorkerIdentity,
                 environ: Mapping[str, str]) -> ChainConfig:
    where = f"chains.{name}"
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"{where}: expected an object")

    # RPC_URL_<CHAIN> overrides the document
    rpc_url = environ.get(f"RPC_URL_{name.upper().replace('-', '_')}") or _get(
        raw, "rpcUrl", where, worker, kind=str
    )

    batches_raw = raw.get("batches")
    if not isinstance(batches_raw, dict) or not batches_raw:
        raise ConfigInvalid(f"{where}: at least one batch is required")
    batch_ids: dict[str, str] = {}
    for key, batch_raw in batches_raw.items():
        batch_where = f"{where}.batches.{key}"
        batch_id = _get(
            _expect_object(batch_raw, batch_where), "batchId", batch_where, worker,
            default=str(key), kind=str,
        )
        if batch_id in batch_ids.values():
            raise ConfigInvalid(f"{batch_where}: duplicate batchId {batch_id!r}")
        batch_ids[str(key)] = batch_id

    oracles: list[OracleConfig] = []
    for i, oracle_raw in enumerate(_expect_list(raw.get("oracles") or [], f"{where}.oracles")):
        oracle_where = f"{where}.oracles[{i}]"
        oracle_raw = _expect_object(oracle_raw, oracle_where)
        oracle_address = _parse_address(oracle_raw.get("address"), oracle_where)
        tokens = _expect_list(oracle_raw.get("tokens") or [], f"{oracle_where}.tokens")
        feeds = tuple(
            _parse_feed(t, f"{oracle_where}.tokens[{j}]", oracle_address, batch_ids, worker)
            for j, t in enumerate(tokens)
        )
        oracles.append(OracleConfig(address=oracle_address, feeds=feeds))

    all_feeds = [f for o in oracles for f in o.feeds]
    batches: list[BatchConfig] = []
    for key, batch_raw in batches_raw.items():
        batch_where = f"{where}.batches.{key}"
        members = tuple(f for f in all_feeds if f.batch_id == batch_ids[str(key)])
        if not members:
            logger.warning(f"{batch_where}: batch has no feeds, skipping")
            continue
        polling = _get(batch_raw, "pollingIntervalMs", batch_where, worker, kind=int)
        if polling <= 0:
            raise ConfigInvalid(f"{batch_where}: pollingIntervalMs must be positive")
        batches.append(
            BatchConfig(
                batch_id=batch_ids[str(key)],
                feeds=members,
                polling_interval_ms=polling,
                write_delay_ms=_parse_write_delay(batch_raw, batch_where, worker),
                customer_id=_get(batch_raw, "customerId", batch_where, worker, default=None),
            )
        )

    if not batches:
        raise ConfigInvalid(f"{where}: no batch has any feeds")

    multicall = _parse_address(raw.get("multicallAddress"), f"{where}.multicallAddress")
    pyth = _parse_address(raw.get("pythAddress"), f"{where}.pythAddress")

    return ChainConfig(
        name=name,
        rpc_url=rpc_url,
        tx_config=_parse_tx_config(raw.get("txConfig", {}), f"{where}.txConfig", worker),
        multicall_address=multicall,
        pyth_address=pyth,
        oracles=tuple(oracles),
        batches=tuple(batches),
        chain_id=_get(raw, "chainId", where, worker, default=None, kind=int),
        uptime_webhook_url=raw.get("uptimeWebhookUrl") or None,
        uptime_interval_seconds=_get(
            raw, "uptimeIntervalSeconds", where, worker,
            default=DEFAULT_UPTIME_INTERVAL_SECONDS, kind=int,
        ),
    )


def _parse_log_sinks(raw: Any, worker: WorkerIdentity) -> tuple[LogSinkConfig, ...]:
    sinks: list[LogSinkConfig] = []
    for i, item in enumerate(_expect_list(raw or [], "logging")):
        if not item:
            continue
        where = f"logging[{i}]"
        _expect_object(item, where)
        kind = _get(item, "type", where, worker, kind=str)
        if kind not in ("datadog", "logtail"):
            raise ConfigInvalid(f"{where}: unknown sink type {kind!r}")
        token = resolve_for_worker(item.get("sourceToken"), worker)
        if not token:
            # Sinks without credentials are disabled, not errors
            logger.debug(f"{where}: no source token, {kind} sink disabled")
            continue
        sinks.append(
            LogSinkConfig(
                kind=kind,
                source_token=token,
                level=_get(item, "level", where, worker, default="info", kind=str),
                region=item.get("region") or None,
            )
        )
    return tuple(sinks)


def parse_config(document: Mapping[str, Any], worker_index: int,
                 environ: Mapping[str, str] | None = None) -> UpdaterConfig:
    """Resolve a parsed configuration document for one worker.

    :param document: Parsed JSON document.
    :param worker_index: 1-based worker index.
    :param environ: Environment used for ``$ENV{...}`` substitution and
        RPC overrides (default: ``os.environ``).
    :returns: Frozen configuration for this worker.
    :raises ConfigInvalid: If the document is malformed.
    """
    environ = os.environ if environ is None else environ
    worker = WorkerIdentity(worker_index)
    document = substitute_env(dict(document), environ)

    chains_raw = document.get("chains")
    if not isinstance(chains_raw, dict) or not chains_raw:
        raise ConfigInvalid("chains: at least one chain is required")

    ttl = _get(document, "onchainCacheTtlSeconds", "root", worker, default=0, kind=(int, float))
    http_cache = _get(document, "httpCacheSeconds", "root", worker, default=0, kind=int)
    if ttl < 0 or http_cache < 0:
        raise ConfigInvalid("root: cache durations must not be negative")

    return UpdaterConfig(
        worker=worker,
        endpoints=_parse_endpoints(document.get("pythHermesEndpoints"), worker),
        chains={
            name: _parse_chain(name, chain_raw, worker, environ)
            for name, chain_raw in chains_raw.items()
        },
        http_cache_seconds=http_cache,
        onchain_cache_ttl_seconds=float(ttl),
        log_sinks=_parse_log_sinks(document.get("logging"), worker),
    )


def load_config(path: str | Path, worker_index: int,
                environ: Mapping[str, str] | None = None) -> UpdaterConfig:
    """Load and resolve a configuration file for one worker.

    :param path: Path to the JSON configuration document.
    :param worker_index: 1-based worker index.
    :param environ: Optional environment override.
    :returns: Frozen configuration for this worker.
    :raises ConfigInvalid: If the file is missing, not JSON, or malformed.
    """
    try:
        with open(path, "r") as file:
            document = json.load(file)
    except OSError as e:
        raise ConfigInvalid(f"Cannot read configuration {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"Configuration {path} is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise ConfigInvalid(f"Configuration {path} must be a JSON object")
    return parse_config(document, worker_index, environ)
