from pydantic import BaseModel, Field


class HaftarahOut(BaseModel):
    id: str
    name: str


class ParashaOut(BaseModel):
    id: str
    name_en: str
    name_he: str | None = None
    book: str | None = None
    order_index: int
    haftarot: list[HaftarahOut] = Field(default_factory=list)
