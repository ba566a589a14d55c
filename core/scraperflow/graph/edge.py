"""
Edge Protocol - How nodes connect in a graph.

A connection is a directed edge from a source node's output port to a
target node's input port. The target depends on the source: it only becomes
ready once the source has succeeded, and it receives the source's output on
the connected input port.

- An output port may fan out to many connections.
- An input port accepts at most one incoming connection. Fan-in is done with
  an aggregator node that declares several input ports.

GraphSpec is the authored, immutable workflow definition handed to the engine.
It accepts the canvas document format directly (``sourceHandle`` /
``targetHandle`` for ports, ``data`` for node config, extra UI fields ignored).
"""

import json
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, model_validator

from scraperflow.graph.node import DEFAULT_INPUT_PORT, DEFAULT_OUTPUT_PORT, NodeSpec


class Connection(BaseModel):
    """
    Specification for a connection between two node ports.

    Examples:
        Connection(source="fetch", target="parse")

        Connection(
            id="split-left",
            source="splitter",
            source_port="left",
            target="merge",
            target_port="a",
        )
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    source_port: str = Field(
        default=DEFAULT_OUTPUT_PORT,
        validation_alias=AliasChoices("source_port", "sourceHandle", "sourcePort"),
    )
    target: str = Field(description="Target node ID")
    target_port: str = Field(
        default=DEFAULT_INPUT_PORT,
        validation_alias=AliasChoices("target_port", "targetHandle", "targetPort"),
    )

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = dict(data)
            source = data.get("source", "")
            target = data.get("target", "")
            source_port = (
                data.get("source_port")
                or data.get("sourceHandle")
                or data.get("sourcePort")
                or DEFAULT_OUTPUT_PORT
            )
            target_port = (
                data.get("target_port")
                or data.get("targetHandle")
                or data.get("targetPort")
                or DEFAULT_INPUT_PORT
            )
            data["id"] = f"{source}.{source_port}->{target}.{target_port}"
        return data

    def describe(self) -> str:
        return f"{self.source}.{self.source_port} -> {self.target}.{self.target_port}"


class GraphSpec(BaseModel):
    """
    Complete workflow graph specification.

    Node and connection order is significant: it is the tie-break for nodes
    with no ordering constraint between them, which keeps runs reproducible.

    Example:
        GraphSpec(
            id="price-scraper",
            nodes=[
                NodeSpec(id="fetch", type="HTTP Request", inputs=[]),
                NodeSpec(id="parse", type="JSON Parser"),
            ],
            connections=[Connection(source="fetch", target="parse")],
        )
    """

    id: str = "graph"
    name: str = ""
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list, description="All node specifications")
    connections: list[Connection] = Field(
        default_factory=list,
        validation_alias=AliasChoices("connections", "edges"),
        description="All connection specifications",
    )

    model_config = {"frozen": True, "extra": "ignore", "populate_by_name": True}

    @classmethod
    def from_canvas(cls, data: dict[str, Any]) -> "GraphSpec":
        """Build a graph from a canvas document (``{"nodes": [...], "connections": [...]}``)."""
        return cls.model_validate(data)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "GraphSpec":
        """Load a canvas document from disk."""
        with open(path, encoding="utf-8") as f:
            return cls.from_canvas(json.load(f))

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_connections(self, node_id: str) -> list[Connection]:
        """Get all connections leaving a node, in authored order."""
        return [c for c in self.connections if c.source == node_id]

    def get_incoming_connections(self, node_id: str) -> list[Connection]:
        """Get all connections entering a node, in authored order."""
        return [c for c in self.connections if c.target == node_id]
