from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _Payload(BaseModel):
    # El emisor manda camelCase (analyzerId) o snake_case (analyzer_id)
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        coerce_numbers_to_str=True,
        extra="ignore",
    )


class PatientPayload(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    birth_date: Optional[str] = None
    sex: Optional[str] = None
    address: Optional[str] = None
    telephone: Optional[str] = None
    physicians: Optional[str] = None
    height: Optional[str] = None
    weight: Optional[str] = None


class TestResultPayload(_Payload):
    __test__ = False  # pytest: no es una clase de test

    id: Optional[str] = None
    # test_id / sample_id / value se validan en ResultWriter (con índice del registro)
    test_id: Optional[str] = None
    sample_id: Optional[str] = None
    value: Optional[str] = None
    units: Optional[str] = None
    reference_range: Optional[str] = None
    flags: List[str] = Field(default_factory=list)
    status: Optional[str] = None
    completed_date_time: Optional[str] = None
    analyzer_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("flags", mode="before")
    @classmethod
    def _flags_none(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v


class LabResultsBatch(_Payload):
    analyzer_id: str
    patient_id: Optional[str] = None
    patient_data: Optional[PatientPayload] = None
    test_results: List[TestResultPayload] = Field(default_factory=list)
    timestamp: Optional[str] = None


# --------- Configuración (app/configs/settings.yaml) ----------
class PathsCfg(BaseModel):
    logs_root: str = "logs"
    inbox: str = "data/inbox"
    archive: str = "data/archive"
    error: str = "data/error"


class DatabaseCfg(BaseModel):
    url: str = "sqlite:///labsync.db"
    busy_timeout_sec: float = 5.0
    create_schema: bool = True
    echo: bool = False


class RetryCfg(BaseModel):
    attempts: int = Field(3, ge=1)
    backoff_ms: int = Field(100, ge=0)
    factor: float = Field(2.0, ge=1.0)


class FileTransportCfg(BaseModel):
    filename_glob: str = "*.json"


class TransportCfg(BaseModel):
    type: Literal["file"] = "file"
    file: FileTransportCfg = FileTransportCfg()


class Settings(BaseModel):
    app: Dict[str, Any] = {}
    paths: PathsCfg = PathsCfg()
    database: DatabaseCfg = DatabaseCfg()
    retry: RetryCfg = RetryCfg()
    transport: Dict[str, TransportCfg] = {"results": TransportCfg()}
