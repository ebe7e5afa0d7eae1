"""
Revision & ManuscriptFile Pydantic Models

中文注释: 修订循环的核心模型。每次作者成功修回追加一条 RevisionEntry（只追加，不修改）。
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict


class ManuscriptFile(BaseModel):
    """稿件文件引用（实际文件存储不在引擎范围内）"""

    file_path: str = Field(..., min_length=1, description="文件在 Storage 中的路径")
    pages: int = Field(1, ge=0, description="页数，用于计算版面费")
    size: Optional[int] = Field(None, ge=0, description="字节数")

    model_config = ConfigDict(frozen=True)


class RevisionEntry(BaseModel):
    """一次修回记录"""

    round: int = Field(..., ge=1, description="修回后进入的新轮次")
    submitted_at: datetime
    notes: str = ""
    file: ManuscriptFile

    model_config = ConfigDict(frozen=True)

