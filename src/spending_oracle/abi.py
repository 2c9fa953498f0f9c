"""ABI encoding for the module contract: event topics, log decoding and call data."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import eth_abi.abi
from eth_utils import keccak, to_checksum_address

from .errors import MalformedEventError
from .events import OperationType, OrderKey


PROTOCOL_EXECUTION = (
    "ProtocolExecution(address,address,uint8,address[],uint256[],address[],uint256[],uint256)"
)
TRANSFER_EXECUTED = "TransferExecuted(address,address,address,uint256,uint256)"
ACQUIRED_BALANCE_UPDATED = "AcquiredBalanceUpdated(address,address,uint256)"

# Role granted to sub-accounts allowed to execute protocol operations.
DEFI_EXECUTE_ROLE = 1


def event_topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


PROTOCOL_EXECUTION_TOPIC = event_topic(PROTOCOL_EXECUTION)
TRANSFER_EXECUTED_TOPIC = event_topic(TRANSFER_EXECUTED)
ACQUIRED_BALANCE_UPDATED_TOPIC = event_topic(ACQUIRED_BALANCE_UPDATED)


# name -> (signature, input types, output types)
FUNCTIONS: dict[str, tuple[str, list[str], list[str]]] = {
    "getSafeValue": ("getSafeValue()", [], ["uint256", "uint256", "uint256"]),
    "getSpendingAllowance": ("getSpendingAllowance(address)", ["address"], ["uint256"]),
    "getAcquiredBalance": ("getAcquiredBalance(address,address)", ["address", "address"], ["uint256"]),
    "getSubAccountLimits": ("getSubAccountLimits(address)", ["address"], ["uint256", "uint256"]),
    "getSubaccountsByRole": ("getSubaccountsByRole(uint16)", ["uint16"], ["address[]"]),
    "batchUpdate": (
        "batchUpdate(address,uint256,address[],uint256[])",
        ["address", "uint256", "address[]", "uint256[]"],
        [],
    ),
}


def _abi_value(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type == "address[]":
        return [to_checksum_address(v) for v in value]
    return value


def encode_call(name: str, *args: Any) -> str:
    """Return 0x-prefixed call data for ``name(args)``."""
    signature, input_types, _ = FUNCTIONS[name]
    if len(args) != len(input_types):
        raise ValueError(f"{name} takes {len(input_types)} arguments, got {len(args)}")
    encoded_args = [_abi_value(t, a) for t, a in zip(input_types, args)]
    data = function_selector(signature) + eth_abi.abi.encode(input_types, encoded_args)
    return "0x" + data.hex()


def decode_result(name: str, data: str) -> tuple:
    _, _, output_types = FUNCTIONS[name]
    return eth_abi.abi.decode(output_types, _hex_bytes(data))


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte topic for log filters."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def _hex_bytes(value: str) -> bytes:
    return bytes.fromhex(value.removeprefix("0x"))


def _topic_address(topic: str) -> str:
    return "0x" + topic.lower().removeprefix("0x")[-40:]


def _hex_int(value: Any) -> int:
    return int(value, 16) if isinstance(value, str) else int(value)


def log_order_key(log: Mapping[str, Any]) -> OrderKey:
    return OrderKey(_hex_int(log["blockNumber"]), _hex_int(log["logIndex"]))


def decode_log(log: Mapping[str, Any]) -> dict:
    """Decode a ProtocolExecution or TransferExecuted log into an event mapping.

    The mapping carries no timestamp; callers resolve it from the block.
    """
    try:
        topics = log["topics"]
        topic0 = topics[0].lower()
        order_key = log_order_key(log)
        data = _hex_bytes(log.get("data", "0x"))

        if topic0 == PROTOCOL_EXECUTION_TOPIC:
            op_type, tokens_in, amounts_in, tokens_out, amounts_out, spending_cost = eth_abi.abi.decode(
                ["uint8", "address[]", "uint256[]", "address[]", "uint256[]", "uint256"], data
            )
            return {
                "type": "operation",
                "account": _topic_address(topics[1]),
                "target": _topic_address(topics[2]),
                "kind": OperationType.parse(op_type),
                "tokens_in": [t.lower() for t in tokens_in],
                "amounts_in": list(amounts_in),
                "tokens_out": [t.lower() for t in tokens_out],
                "amounts_out": list(amounts_out),
                "spending_cost": spending_cost,
                "block_number": order_key.block_number,
                "log_index": order_key.log_index,
            }

        if topic0 == TRANSFER_EXECUTED_TOPIC:
            amount, spending_cost = eth_abi.abi.decode(["uint256", "uint256"], data)
            return {
                "type": "transfer",
                "account": _topic_address(topics[1]),
                "token": _topic_address(topics[2]),
                "recipient": _topic_address(topics[3]),
                "amount": amount,
                "spending_cost": spending_cost,
                "block_number": order_key.block_number,
                "log_index": order_key.log_index,
            }
    except MalformedEventError:
        raise
    except Exception as exc:
        raise MalformedEventError(f"Cannot decode log: {exc}", raw=dict(log)) from exc

    raise MalformedEventError(f"Unknown event topic: {topics[0]}", raw=dict(log))


def decode_acquired_token(log: Mapping[str, Any]) -> str:
    """Token address of an AcquiredBalanceUpdated log."""
    return _topic_address(log["topics"][2])


def batch_update_call(account: str, new_allowance: int, tokens: Sequence[str], amounts: Sequence[int]) -> str:
    return encode_call("batchUpdate", account, new_allowance, list(tokens), list(amounts))
