"""Type definitions for API components"""

from typing import Optional

from pydantic import BaseModel


# Response models
class ErrorResponse(BaseModel):
    """Standard error response"""

    success: bool = False
    error: str
    message: str
    details: Optional[str] = None


# Authentication types
class TokenData(BaseModel):
    """JWT token data"""

    sub: str
    exp: int
    iat: int
