from pydantic import BaseModel


class LocationRead(BaseModel):
    code: str
    name: str
    active: bool

    class Config:
        from_attributes = True
