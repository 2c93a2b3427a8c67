"""Multisig P2SH transaction builder, signer and broadcaster for Bitcoin-derived coins."""

from .batching import BatchCoordinator, ConsolidationReport, plan_batches
from .broadcast import Broadcaster, TransactionSummary
from .config import ConfigurationError, MultisigConfig, RPCConfig, load_multisig_config, load_rpc_config
from .errors import (
    AddressValidationError,
    BroadcastError,
    BuildError,
    DecodeError,
    FetchError,
    InsufficientFundsError,
    MultisigError,
    SigningError,
    ValidationError,
)
from .models import UTXO, RedeemScriptInfo, TransactionBatch, TransactionInput
from .rpc_client import NodeCLIClient, NodeRPCClient, RPCError, RPCTransportError, build_node_client
from .session import SessionStore, SigningSession
from .signing import DuplicateSignatureGuard, PartialSigner, SigningResult, count_signatures
from .tx_builder import TransactionBuilder
from .utxos import UTXOFetcher
from .workflows import MultisigWorkflow

__all__ = [
    "AddressValidationError",
    "BatchCoordinator",
    "BroadcastError",
    "Broadcaster",
    "BuildError",
    "ConfigurationError",
    "ConsolidationReport",
    "DecodeError",
    "DuplicateSignatureGuard",
    "FetchError",
    "InsufficientFundsError",
    "MultisigConfig",
    "MultisigError",
    "MultisigWorkflow",
    "NodeCLIClient",
    "NodeRPCClient",
    "PartialSigner",
    "RPCConfig",
    "RPCError",
    "RPCTransportError",
    "RedeemScriptInfo",
    "SessionStore",
    "SigningError",
    "SigningResult",
    "SigningSession",
    "TransactionBatch",
    "TransactionBuilder",
    "TransactionInput",
    "TransactionSummary",
    "UTXO",
    "UTXOFetcher",
    "ValidationError",
    "build_node_client",
    "count_signatures",
    "load_multisig_config",
    "load_rpc_config",
    "plan_batches",
]
