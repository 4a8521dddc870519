from typing import Optional, Union

from pydantic import BaseModel


class ProofRequest(BaseModel):
    credential: Optional[str] = None
    randomness: Optional[str] = None
    audience: Optional[str] = None
    ephemeralPublicKey: Optional[str] = None
    maxEpoch: Optional[Union[int, str]] = None


class VerifyRequest(BaseModel):
    credential: Optional[str] = None
