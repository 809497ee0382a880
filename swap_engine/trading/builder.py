from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import struct
from typing import Any, Awaitable, Callable, Sequence

import aiohttp
from solders.instruction import AccountMeta, CompiledInstruction, Instruction
from solders.message import MessageHeader, MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from swap_engine.common import log_event

from .errors import BuildError, UpstreamError
from .jupiter import JupiterApiError, JupiterClient
from .types import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    SOL_MINT,
    SYSTEM_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    BuiltTransaction,
    FeeInstruction,
    PrioritizationConfig,
    Quote,
    to_int,
)

MAX_TRANSACTION_SIZE = 1232
MAX_ACCOUNTS_PER_TRANSACTION = 256
MAX_COMPUTE_UNIT_LIMIT = 1_400_000
NATIVE_FEE_COMPUTE_UNITS = 1_000
TOKEN_FEE_COMPUTE_UNITS = 40_000

_SYSTEM_TRANSFER_TAG = 2
_TOKEN_TRANSFER_TAG = 3
_TOKEN_TRANSFER_CHECKED_TAG = 12
_ATA_CREATE_IDEMPOTENT_TAG = 1
_SET_COMPUTE_UNIT_LIMIT_TAG = 2

LookupResolver = Callable[[str], Awaitable[list[str]]]


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return address


def _parse_pubkey(value: str, *, label: str) -> Pubkey:
    try:
        return Pubkey.from_string(str(value).strip())
    except ValueError as error:
        raise BuildError(f"invalid {label} address: {value!r}") from error


def fee_instructions(fee: FeeInstruction, *, token_program: str = TOKEN_PROGRAM_ID) -> list[Instruction]:
    """Instructions that move ``fee`` from the payer to the receiver.

    Native fees are a single system transfer. Token fees create the receiver's
    associated token account if needed and then transfer from the payer's.
    The transfer is always the last instruction returned.
    """
    payer = _parse_pubkey(fee.payer, label="fee payer")
    receiver = _parse_pubkey(fee.receiver, label="fee receiver")
    if fee.is_native:
        return [transfer(TransferParams(from_pubkey=payer, to_pubkey=receiver, lamports=int(fee.amount_atomic)))]

    mint = _parse_pubkey(fee.mint, label="fee mint")
    program = _parse_pubkey(token_program, label="token program")
    source = associated_token_address(payer, mint, program)
    destination = associated_token_address(receiver, mint, program)
    create_destination = Instruction(
        Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID),
        bytes([_ATA_CREATE_IDEMPOTENT_TAG]),
        [
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=receiver, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=Pubkey.from_string(SYSTEM_PROGRAM_ID), is_signer=False, is_writable=False),
            AccountMeta(pubkey=program, is_signer=False, is_writable=False),
        ],
    )
    token_transfer = Instruction(
        program,
        bytes([_TOKEN_TRANSFER_TAG]) + struct.pack("<Q", int(fee.amount_atomic)),
        [
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=payer, is_signer=True, is_writable=False),
        ],
    )
    return [create_destination, token_transfer]


def _static_privileges(message: MessageV0) -> dict[Pubkey, list[bool]]:
    header = message.header
    keys = list(message.account_keys)
    total = len(keys)
    required = header.num_required_signatures
    writable_signers = required - header.num_readonly_signed_accounts
    writable_end = total - header.num_readonly_unsigned_accounts

    privileges: dict[Pubkey, list[bool]] = {}
    for index, key in enumerate(keys):
        is_signer = index < required
        is_writable = index < writable_signers if is_signer else index < writable_end
        privileges[key] = [is_signer, is_writable]
    return privileges


def _loaded_account_count(message: MessageV0) -> int:
    return sum(
        len(bytes(lookup.writable_indexes)) + len(bytes(lookup.readonly_indexes))
        for lookup in message.address_table_lookups
    )


def _loaded_addresses(
    message: MessageV0,
    tables: dict[str, Sequence[str]],
) -> list[tuple[Pubkey, bool]]:
    """Accounts loaded through lookup tables, in runtime index order."""
    writable: list[tuple[Pubkey, bool]] = []
    readonly: list[tuple[Pubkey, bool]] = []
    for lookup in message.address_table_lookups:
        addresses = tables.get(str(lookup.account_key))
        if addresses is None:
            raise BuildError(f"address lookup table was not resolved: {lookup.account_key}")
        try:
            writable.extend((Pubkey.from_string(addresses[i]), True) for i in bytes(lookup.writable_indexes))
            readonly.extend((Pubkey.from_string(addresses[i]), False) for i in bytes(lookup.readonly_indexes))
        except IndexError as error:
            raise BuildError(f"lookup table {lookup.account_key} is shorter than the message expects") from error
    return [*writable, *readonly]


def append_instructions(
    message: MessageV0,
    instructions: Sequence[Instruction],
    *,
    loaded_addresses: Sequence[tuple[Pubkey, bool]] = (),
) -> MessageV0:
    """Return a copy of ``message`` with ``instructions`` appended after the existing ones.

    Static account keys are regrouped by (signer, writable) with new keys added
    at the end of their group. Every compiled instruction is remapped to the
    new key order, and indices into lookup-table accounts shift by the number
    of keys added. Accounts already loaded through a lookup table are reused
    in place.
    """
    old_keys = list(message.account_keys)
    privileges = _static_privileges(message)
    loaded_index = {key: (position, writable) for position, (key, writable) in enumerate(loaded_addresses)}

    for instruction in instructions:
        metas = [
            *instruction.accounts,
            AccountMeta(pubkey=instruction.program_id, is_signer=False, is_writable=False),
        ]
        for meta in metas:
            current = privileges.get(meta.pubkey)
            if current is not None:
                if meta.is_signer and not current[0]:
                    raise BuildError(f"instruction requires an extra signer: {meta.pubkey}")
                current[1] = current[1] or meta.is_writable
                continue
            if meta.pubkey in loaded_index:
                _position, loaded_writable = loaded_index[meta.pubkey]
                if meta.pubkey == instruction.program_id:
                    raise BuildError(f"program {meta.pubkey} is only available through a lookup table")
                if meta.is_signer or (meta.is_writable and not loaded_writable):
                    raise BuildError(f"lookup-table account {meta.pubkey} lacks the required privileges")
                continue
            if meta.is_signer:
                raise BuildError(f"instruction requires an extra signer: {meta.pubkey}")
            privileges[meta.pubkey] = [False, meta.is_writable]

    ordered: list[Pubkey] = []
    for group in ((True, True), (True, False), (False, True), (False, False)):
        ordered.extend(key for key, flags in privileges.items() if (flags[0], flags[1]) == group)

    loaded_total = _loaded_account_count(message)
    if len(ordered) + loaded_total > MAX_ACCOUNTS_PER_TRANSACTION:
        raise BuildError(f"transaction would reference {len(ordered) + loaded_total} accounts")

    new_index = {key: position for position, key in enumerate(ordered)}
    shift = len(ordered) - len(old_keys)

    def remap(old: int) -> int:
        if old < len(old_keys):
            return new_index[old_keys[old]]
        return old + shift

    def resolve(key: Pubkey) -> int:
        if key in new_index:
            return new_index[key]
        return len(ordered) + loaded_index[key][0]

    compiled = [
        CompiledInstruction(
            remap(instruction.program_id_index),
            bytes(instruction.data),
            bytes(remap(account) for account in bytes(instruction.accounts)),
        )
        for instruction in message.instructions
    ]
    compiled.extend(
        CompiledInstruction(
            new_index[instruction.program_id],
            bytes(instruction.data),
            bytes(resolve(meta.pubkey) for meta in instruction.accounts),
        )
        for instruction in instructions
    )

    header = MessageHeader(
        sum(1 for flags in privileges.values() if flags[0]),
        sum(1 for flags in privileges.values() if flags[0] and not flags[1]),
        sum(1 for flags in privileges.values() if not flags[0] and not flags[1]),
    )
    return MessageV0(
        header,
        ordered,
        message.recent_blockhash,
        compiled,
        list(message.address_table_lookups),
    )


def raise_compute_unit_limit(message: MessageV0, extra_units: int) -> MessageV0:
    """Add ``extra_units`` to the message's SetComputeUnitLimit, if it has one."""
    keys = list(message.account_keys)
    compute_budget = Pubkey.from_string(COMPUTE_BUDGET_PROGRAM_ID)
    instructions = list(message.instructions)
    changed = False
    for position, instruction in enumerate(instructions):
        data = bytes(instruction.data)
        if instruction.program_id_index >= len(keys) or keys[instruction.program_id_index] != compute_budget:
            continue
        if len(data) != 5 or data[0] != _SET_COMPUTE_UNIT_LIMIT_TAG:
            continue
        current = struct.unpack_from("<I", data, 1)[0]
        updated = min(MAX_COMPUTE_UNIT_LIMIT, current + max(0, int(extra_units)))
        instructions[position] = CompiledInstruction(
            instruction.program_id_index,
            bytes([_SET_COMPUTE_UNIT_LIMIT_TAG]) + struct.pack("<I", updated),
            bytes(instruction.accounts),
        )
        changed = True
    if not changed:
        return message
    return MessageV0(
        message.header,
        keys,
        message.recent_blockhash,
        instructions,
        list(message.address_table_lookups),
    )


def decode_fee_transfers(
    raw: bytes | VersionedTransaction,
    *,
    receiver: str,
    mint: str | None = None,
    token_program: str = TOKEN_PROGRAM_ID,
    loaded_addresses: Sequence[tuple[Pubkey, bool]] = (),
) -> list[FeeInstruction]:
    """Transfers to ``receiver`` found in a serialized transaction.

    With ``mint`` unset (or native) this looks for system transfers to the
    receiver; otherwise for token transfers into the receiver's associated
    token account for ``mint``.
    """
    transaction = raw if isinstance(raw, VersionedTransaction) else VersionedTransaction.from_bytes(raw)
    message = transaction.message
    keys = [*message.account_keys, *(key for key, _writable in loaded_addresses)]
    receiver_key = Pubkey.from_string(receiver)
    native = mint is None or mint == SOL_MINT
    token_programs = {Pubkey.from_string(TOKEN_PROGRAM_ID), Pubkey.from_string(TOKEN_2022_PROGRAM_ID)}
    destination = (
        None
        if native
        else associated_token_address(receiver_key, Pubkey.from_string(mint), Pubkey.from_string(token_program))
    )

    def key_at(index: int) -> Pubkey | None:
        return keys[index] if index < len(keys) else None

    found: list[FeeInstruction] = []
    for instruction in message.instructions:
        program = key_at(instruction.program_id_index)
        data = bytes(instruction.data)
        accounts = [key_at(index) for index in bytes(instruction.accounts)]

        if native and program == Pubkey.from_string(SYSTEM_PROGRAM_ID):
            if len(data) == 12 and struct.unpack_from("<I", data, 0)[0] == _SYSTEM_TRANSFER_TAG:
                if len(accounts) >= 2 and accounts[1] == receiver_key:
                    found.append(
                        FeeInstruction(
                            payer=str(accounts[0]),
                            receiver=receiver,
                            amount_atomic=struct.unpack_from("<Q", data, 4)[0],
                        )
                    )
        elif not native and program in token_programs and data:
            if data[0] == _TOKEN_TRANSFER_TAG and len(data) == 9 and len(accounts) >= 3:
                target, owner = accounts[1], accounts[2]
            elif data[0] == _TOKEN_TRANSFER_CHECKED_TAG and len(data) == 10 and len(accounts) >= 4:
                target, owner = accounts[2], accounts[3]
            else:
                continue
            if target == destination:
                found.append(
                    FeeInstruction(
                        payer=str(owner),
                        receiver=receiver,
                        amount_atomic=struct.unpack_from("<Q", data, 1)[0],
                        mint=str(mint),
                    )
                )
    return found


class TransactionBuilder:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        jupiter: JupiterClient,
        lookup_resolver: LookupResolver | None = None,
    ) -> None:
        self._logger = logger
        self._jupiter = jupiter
        self._lookup_resolver = lookup_resolver

    async def _resolve_lookup_tables(self, message: MessageV0) -> list[tuple[Pubkey, bool]]:
        if self._lookup_resolver is None or not message.address_table_lookups:
            return []
        tables: dict[str, Sequence[str]] = {}
        try:
            for lookup in message.address_table_lookups:
                address = str(lookup.account_key)
                if address not in tables:
                    tables[address] = await self._lookup_resolver(address)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise UpstreamError(f"address lookup table fetch failed: {error}", transient=True) from error
        return _loaded_addresses(message, tables)

    async def _fetch_swap_transaction(
        self,
        *,
        quote: Quote,
        wallet_public_key: str,
        prioritization: PrioritizationConfig,
    ) -> dict[str, Any]:
        try:
            return await self._jupiter.swap(
                quote_response=quote.raw,
                user_public_key=wallet_public_key,
                prioritization_fee=prioritization.jupiter_fee_param(),
                dynamic_compute_unit_limit=prioritization.dynamic_compute_unit_limit,
            )
        except JupiterApiError as error:
            raise UpstreamError(str(error), transient=error.transient, status=error.status) from error
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise UpstreamError(f"swap build request failed: {error}", transient=True) from error

    async def build(
        self,
        *,
        quote: Quote,
        wallet_public_key: str,
        fee: FeeInstruction,
        prioritization: PrioritizationConfig,
        token_program: str = TOKEN_PROGRAM_ID,
    ) -> BuiltTransaction:
        quote.consume()

        wallet = _parse_pubkey(wallet_public_key, label="wallet")
        _parse_pubkey(fee.receiver, label="fee receiver")
        if fee.payer != wallet_public_key:
            raise BuildError("fee payer must be the trading wallet")

        payload = await self._fetch_swap_transaction(
            quote=quote,
            wallet_public_key=wallet_public_key,
            prioritization=prioritization,
        )
        encoded = payload.get("swapTransaction")
        if not isinstance(encoded, str) or not encoded.strip():
            raise BuildError("aggregator response is missing swapTransaction")
        if payload.get("simulationError"):
            log_event(
                self._logger,
                level="warning",
                event="swap_simulation_error",
                message="Aggregator reported a simulation error while sizing compute units",
                simulation_error=payload.get("simulationError"),
            )

        try:
            swap_tx = VersionedTransaction.from_bytes(base64.b64decode(encoded))
        except (binascii.Error, ValueError) as error:
            raise BuildError(f"swapTransaction could not be decoded: {error}") from error

        message = swap_tx.message
        if not isinstance(message, MessageV0):
            raise BuildError("swapTransaction is not a versioned (v0) transaction")
        if not message.account_keys or message.account_keys[0] != wallet:
            raise BuildError("swapTransaction fee payer is not the trading wallet")

        loaded = await self._resolve_lookup_tables(message)
        extra = fee_instructions(fee, token_program=token_program)
        merged = append_instructions(message, extra, loaded_addresses=loaded)
        merged = raise_compute_unit_limit(
            merged,
            NATIVE_FEE_COMPUTE_UNITS if fee.is_native else TOKEN_FEE_COMPUTE_UNITS,
        )

        placeholders = [Signature.default()] * merged.header.num_required_signatures
        unsigned = bytes(VersionedTransaction.populate(merged, placeholders))
        if len(unsigned) > MAX_TRANSACTION_SIZE:
            raise BuildError(
                f"transaction with fee is {len(unsigned)} bytes; the limit is {MAX_TRANSACTION_SIZE}",
                details={"size": len(unsigned)},
            )

        transfers = decode_fee_transfers(
            unsigned,
            receiver=fee.receiver,
            mint=None if fee.is_native else fee.mint,
            token_program=token_program,
            loaded_addresses=loaded,
        )
        if len(transfers) != 1 or transfers[0].amount_atomic != fee.amount_atomic:
            raise BuildError(f"expected exactly one fee transfer, found {len(transfers)}")

        last_valid_block_height = to_int(payload.get("lastValidBlockHeight"), -1)
        log_event(
            self._logger,
            level="info",
            event="swap_transaction_built",
            message="Swap transaction built with platform fee",
            size_bytes=len(unsigned),
            instruction_count=len(merged.instructions),
            fee_atomic=fee.amount_atomic,
            fee_mint=fee.mint,
            anti_mev=prioritization.anti_mev,
        )
        return BuiltTransaction(
            unsigned_tx=unsigned,
            last_valid_block_height=last_valid_block_height if last_valid_block_height >= 0 else None,
            fee=fee,
            quote_summary=quote.summary(),
        )
