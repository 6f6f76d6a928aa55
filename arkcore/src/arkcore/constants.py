"""
Bitcoin, Taproot and Ark protocol constants.
"""

from __future__ import annotations

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# BIP-341 leaf version for tapscript
TAP_LEAF_VERSION = 0xC0

# BIP-341 "H" point: nothing-up-my-sleeve internal key with no known discrete log.
# Used as the internal key of every VTXO script so that only script paths are spendable.
TAPROOT_UNSPENDABLE_KEY = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)

# Sighash types
SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# Ark transactions are TRUC (v3) transactions
ARK_TX_VERSION = 3

# nSequence used on inputs when nLockTime must be enforced
TX_LOCKTIME_SEQUENCE = 0xFFFFFFFE
TX_FINAL_SEQUENCE = 0xFFFFFFFF

# nLockTime values at or above this are unix timestamps, below are block heights
LOCKTIME_THRESHOLD = 500_000_000

# Pay-to-anchor output script (OP_1 <0x4e73>)
P2A_SCRIPT = bytes.fromhex("51024e73")
ANCHOR_VALUE = 0

# Commitment transaction output layout
BATCH_OUTPUT_VTXO_INDEX = 0
BATCH_OUTPUT_CONNECTORS_INDEX = 1

# Default relative timelock of the unilateral exit leaf (blocks)
DEFAULT_EXIT_DELAY_BLOCKS = 144

# Default dust floor used when the server does not advertise one
DEFAULT_DUST_AMOUNT = 330

# Bech32m human readable parts of Ark addresses
ARK_ADDRESS_HRP_MAINNET = "ark"
ARK_ADDRESS_HRP_TESTNET = "tark"
ARK_ADDRESS_VERSION = 0

# Intent proofs are valid for two minutes after creation
INTENT_EXPIRY_SECONDS = 120
