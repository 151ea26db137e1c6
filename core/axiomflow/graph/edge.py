"""
Edge Protocol - How nodes connect in a workflow graph.

An edge is a directed connection from a source node to a target node. Edges
leaving multi-branch nodes (condition, parallel) carry a source-handle label
naming the branch they belong to; the executor follows only the edges whose
handle matches the branch a condition picked.

Example:
    EdgeSpec(source="filter", target="writeOutreach", source_handle="qualified")
"""

from pydantic import AliasChoices, BaseModel, Field, model_validator


class EdgeSpec(BaseModel):
    """Specification for an edge between nodes."""

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = Field(
        default=None,
        validation_alias=AliasChoices("source_handle", "sourceHandle"),
        description="Branch label on the source node this edge belongs to",
    )
    description: str = ""

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _default_id(self) -> "EdgeSpec":
        if not self.id:
            suffix = f":{self.source_handle}" if self.source_handle else ""
            self.id = f"{self.source}->{self.target}{suffix}"
        return self

    def matches_handle(self, handle: str | None) -> bool:
        """An unlabelled request follows every edge; a labelled one only its branch."""
        if handle is None:
            return True
        return self.source_handle == handle
