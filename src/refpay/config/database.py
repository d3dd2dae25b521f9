from pydantic import BaseModel


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///./refpay.db"  # postgresql+psycopg://... in production
    echo: bool = False
