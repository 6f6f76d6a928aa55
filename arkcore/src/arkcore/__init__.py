"""
arkcore - Protocol core for Ark clients

Provides script trees, offchain transactions, tree validation, MuSig2 tree
signing and intent proofs.
"""

__version__ = "0.1.0"

from arkcore.address import AddressError, ArkAddress
from arkcore.intent import (
    IntentProofError,
    create_intent_proof,
    delete_message,
    intent_fee,
    register_message,
)
from arkcore.models import (
    ArkInfo,
    Coin,
    ExtendedCoin,
    ExtendedVirtualCoin,
    NetworkType,
    Output,
    VirtualCoin,
    VtxoState,
)
from arkcore.musig2 import Musig2Error
from arkcore.offchain import (
    OffchainTx,
    OffchainTxError,
    build_offchain_tx,
    validate_offchain_tx,
)
from arkcore.psbt import Psbt, PsbtError
from arkcore.script import ScriptParseError
from arkcore.signing_session import (
    SigningSessionError,
    TreeSignatureCoordinator,
    TreeSignerSession,
    validate_tree_sigs,
)
from arkcore.tree import TxTree, TxTreeChunk, TxTreeError
from arkcore.validation import (
    TreeValidationError,
    validate_connectors_tx_graph,
    validate_receivers,
    validate_vtxo_tx_graph,
)
from arkcore.vtxo_script import DefaultVtxoScript, VHTLCScript, VtxoScript

__all__ = [
    "AddressError",
    "ArkAddress",
    "ArkInfo",
    "Coin",
    "DefaultVtxoScript",
    "ExtendedCoin",
    "ExtendedVirtualCoin",
    "IntentProofError",
    "Musig2Error",
    "NetworkType",
    "OffchainTx",
    "OffchainTxError",
    "Output",
    "Psbt",
    "PsbtError",
    "ScriptParseError",
    "SigningSessionError",
    "TreeSignatureCoordinator",
    "TreeSignerSession",
    "TreeValidationError",
    "TxTree",
    "TxTreeChunk",
    "TxTreeError",
    "VHTLCScript",
    "VirtualCoin",
    "VtxoScript",
    "VtxoState",
    "build_offchain_tx",
    "create_intent_proof",
    "delete_message",
    "intent_fee",
    "register_message",
    "validate_connectors_tx_graph",
    "validate_offchain_tx",
    "validate_receivers",
    "validate_tree_sigs",
    "validate_vtxo_tx_graph",
]
