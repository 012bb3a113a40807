import os

from pydantic import BaseModel


class Settings(BaseModel):
    ledger_backend: str = "json"  # json | sql | memory
    ledger_file_path: str = "./data/ledger.json"
    database_url: str = "sqlite:////tmp/tracechain.db"
    base_url: str = "http://localhost:8000"
    chain_id: str = "herb-tracechain"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ledger_backend=os.getenv("LEDGER_BACKEND", "json"),
            ledger_file_path=os.getenv("LEDGER_FILE_PATH", "./data/ledger.json"),
            database_url=os.getenv("DATABASE_URL", "sqlite:////tmp/tracechain.db"),
            base_url=os.getenv("BASE_URL", "http://localhost:8000"),
            chain_id=os.getenv("CHAIN_ID", "herb-tracechain"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def verification_url(self, batch_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/api/customer/batch/{batch_id}"
