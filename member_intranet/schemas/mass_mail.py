from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class MassMailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subject: str
    body: str
    eventID: Optional[int] = None
    recipientsCsv: Optional[str] = None
    userIDs: List[int] = []
