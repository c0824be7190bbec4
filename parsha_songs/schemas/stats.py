from pydantic import BaseModel


class TotalSongsOut(BaseModel):
    total: int


class VisitStatsOut(BaseModel):
    total: int
    unique: int
    today: int


class NotifyTestOut(BaseModel):
    ok: bool
    channel: str
