from typing import List, Optional, Union

from pydantic import BaseModel, Field, conint

# Constrained types (v2 style)
PositiveInt = conint(gt=0)
Waittime = conint(ge=0)       # milliseconds; 0 = infinite search (stream only)


class AnalyzeRequest(BaseModel):
    sfen: Optional[str] = Field(None, description="SFEN of the position; omit for startpos")
    moves: Optional[Union[str, List[str]]] = Field(
        None, description="Moves played from the position, space separated or as a list"
    )
    depth: Optional[PositiveInt] = Field(None, description="Maximum search depth")
    nodes: Optional[PositiveInt] = Field(None, description="Maximum node count")

    model_config = {"extra": "ignore"}


class AnalyzeStreamRequest(AnalyzeRequest):
    waittime: Optional[Waittime] = Field(
        None, description="Search time in ms; 0 searches until stopped"
    )


class StopRequest(BaseModel):
    token: str = Field(..., min_length=1, description="Token from the stream's start event")

    model_config = {"extra": "forbid"}
