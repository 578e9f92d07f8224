from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    created_at: datetime
    email: Optional[str] = None
    display_name: Optional[str] = None
