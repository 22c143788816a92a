# gateway/api/models/tools.py
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class ToolResponse(BaseModel):
    """
    Response model for a tool invocation.
    """
    tool: str
    result: Dict[str, Any]


class ToolInfo(BaseModel):
    name: str
    price: Optional[str] = None  # None for free tools
    tokenMint: Optional[str] = None


class ToolListResponse(BaseModel):
    tools: List[ToolInfo]
