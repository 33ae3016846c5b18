from pydantic import BaseModel, Field
from typing import Any, Dict

class Subject(BaseModel):
    type: str
    namespace: str
    id: str

class CreateProofRequest(BaseModel):
    hash: str
    subject: Subject
    metadata: Dict[str, Any] = Field(default_factory=dict)

class VerifyRequest(BaseModel):
    hash: str
