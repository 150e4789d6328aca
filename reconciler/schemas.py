from pydantic import BaseModel, Field
from typing import Optional


class ListenerStatus(BaseModel):
    is_listening: bool
    contract_address: str = Field(..., examples=["0x5FbDB2315678afecb367f032d93F642f64180aa3"])
    rpc_url: str = Field(..., examples=["http://localhost:8545"])
    current_block: Optional[int] = None
    last_block: Optional[int] = None
