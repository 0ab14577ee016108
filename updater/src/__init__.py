"""
Redundant Pyth Price Updater - Core Module

This module provides the staleness detection, failover and escalating
submission loop:
- EndpointSelector: Worker-specific ranking and failover of Hermes endpoints
- HermesClient: Signed price attestations over REST or streaming
- StalenessEvaluator: Heartbeat, deviation and early-update rules
- BatchPlanner: Groups due feeds into atomic batch submissions
- FeeEstimator: Percentile-based fee plans scaled per worker
- SubmissionCoordinator: Staggered write-delay state machine
- ConfirmationTracker: Fixed-cadence confirmation polling
- PriceUpdater: Main orchestrator for one worker process
"""

from .BatchPlanner import BatchCandidate, plan_batch
from .ConfirmationTracker import ConfirmationOutcome, ConfirmationTracker
from .EndpointSelector import Endpoint, EndpointMode, EndpointSelector, rank_endpoints
from .errors import ConfigInvalid, EndpointFailure, RpcFailure, SubmissionRejected
from .FeeEstimator import FeeEstimator, FeePlan
from .HermesClient import HermesClient, PriceAttestation
from .PriceUpdater import PriceUpdater
from .StalenessEvaluator import OnChainValue, StalenessEvaluator, StalenessResult
from .SubmissionCoordinator import SubmissionCoordinator, UpdateState
from .UpdaterConfig import Rational, UpdaterConfig, WorkerIdentity, load_config

__all__ = [
    "BatchCandidate",
    "ConfigInvalid",
    "ConfirmationOutcome",
    "ConfirmationTracker",
    "Endpoint",
    "EndpointFailure",
    "EndpointMode",
    "EndpointSelector",
    "FeeEstimator",
    "FeePlan",
    "HermesClient",
    "OnChainValue",
    "PriceAttestation",
    "PriceUpdater",
    "Rational",
    "RpcFailure",
    "StalenessEvaluator",
    "StalenessResult",
    "SubmissionCoordinator",
    "SubmissionRejected",
    "UpdateState",
    "UpdaterConfig",
    "WorkerIdentity",
    "load_config",
    "plan_batch",
    "rank_endpoints",
]
