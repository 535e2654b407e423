from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from web3 import Web3

TX_HASH_PATTERN = re.compile(r"0x[0-9a-f]{64}")


class EntryRequest(BaseModel):
    player: str = Field(..., min_length=1, max_length=64, description="Entrant address.")
    payment: int = Field(..., ge=0, description="Amount paid with the entry.")
    tx_hash: Optional[str] = Field(None, description="Payment transaction to the custody account.")

    @field_validator("player")
    @classmethod
    def validate_player(cls, value: str) -> str:
        value = value.strip()
        if not Web3.is_address(value):
            raise ValueError("player must be an account address.")
        return Web3.to_checksum_address(value)

    @field_validator("tx_hash")
    @classmethod
    def validate_tx_hash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower()
        if not TX_HASH_PATTERN.fullmatch(value):
            raise ValueError("tx_hash must be a 0x-prefixed 32-byte hex string.")
        return value


class EntryResponse(BaseModel):
    player: str
    position: int
    player_count: int


class UpkeepCheckResponse(BaseModel):
    upkeep_needed: bool
    perform_data: str = "0x"


class UpkeepResponse(BaseModel):
    request_id: int
    state: str


class FulfillRequest(BaseModel):
    request_id: int = Field(..., ge=0)
    random_words: List[int] = Field(..., description="Random words delivered by the oracle.")

    @field_validator("random_words")
    @classmethod
    def validate_words(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("At least one random word is required.")
        for word in value:
            if word < 0:
                raise ValueError("Random words must be unsigned.")
        return value


class FulfillResponse(BaseModel):
    request_id: int
    winner: str
    payout: str


class RaffleStatusResponse(BaseModel):
    state: str
    entrance_fee: str
    interval: int
    balance: str
    player_count: int
    last_round_start: int
    recent_winner: Optional[str] = None
    pending_request_id: Optional[int] = None
