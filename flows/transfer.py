"""
Export / import of chatbots and WhatsApp Flows as portable JSON documents.

Chatbot export format (version "1.0"):
    {
      "version": "1.0",
      "exportedAt": "2026-01-01T10:30:00+00:00",
      "chatbot": {"name", "description", "nodes", "edges", "isActive", "status", "metadata"},
      "whatsappFlows": [ {"whatsappFlowId", "name", ..., "flowJson", ...} ]   # optional
    }

WhatsApp Flow export format:
    {
      "version": "1.0",
      "exportedAt": "...",
      "flow": {"name", "description", "status", "categories", "flowJson",
               "endpointUri", "isActive", "metadata"},
      "dataSource": {"id", "name", "type"}                                      # optional
    }

Imports always create new records with fresh ids. Imported chatbots start
inactive in draft status unless the caller explicitly activates them.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from database.store_base import BaseContextStore
from flows.graph import FlowGraph
from models.schemas import (
    Chatbot, ChatbotStatus, DataSourceRef, Edge, Node, NodeType,
    WhatsAppFlow, WhatsAppFlowNodeData,
)

logger = structlog.get_logger()

EXPORT_VERSION = "1.0"
SUPPORTED_VERSIONS = frozenset({"1.0"})


class ImportValidationError(ValueError):
    """The document cannot be imported."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class ImportValidation(BaseModel):
    is_valid: bool
    errors: list[str] = []
    warnings: list[str] = []
    chatbot_name: str = ""
    node_count: int = 0
    edge_count: int = 0
    referenced_flow_ids: list[str] = []
    embedded_flows_count: int = 0


class ImportResult(BaseModel):
    success: bool = True
    message: str = ""
    chatbot_id: Optional[str] = None
    chatbot_name: Optional[str] = None
    imported_at: datetime
    warnings: list[str] = []
    imported_flows_count: int = 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def referenced_flow_ids(chatbot: Chatbot) -> list[str]:
    """Remote flow ids used by the chatbot's whatsapp_flow nodes, in node order."""
    ids: list[str] = []
    for node in chatbot.nodes:
        if node.type == NodeType.WHATSAPP_FLOW and isinstance(node.data, WhatsAppFlowNodeData):
            if node.data.flow_id and node.data.flow_id not in ids:
                ids.append(node.data.flow_id)
    return ids


# ──────────────────────────────────────────────────────────────
#  Chatbots
# ──────────────────────────────────────────────────────────────

def _flow_entry(flow: WhatsAppFlow, include_metadata: bool) -> dict[str, Any]:
    entry = {
        "whatsappFlowId": flow.whatsapp_flow_id,
        "name": flow.name,
        "description": flow.description,
        "status": flow.status,
        "categories": list(flow.categories),
        "flowJson": flow.flow_json,
        "endpointUri": flow.endpoint_uri,
        "isActive": flow.is_active,
    }
    if include_metadata:
        entry["metadata"] = flow.metadata
    return entry


def export_chatbot(
    chatbot: Chatbot,
    flows: Optional[list[WhatsAppFlow]] = None,
    include_metadata: bool = True,
) -> dict[str, Any]:
    dumped = chatbot.model_dump(mode="json", by_alias=True)
    body: dict[str, Any] = {
        "name": chatbot.name,
        "description": chatbot.description,
        "nodes": dumped["nodes"],
        "edges": dumped["edges"],
        "isActive": chatbot.is_active,
        "status": chatbot.status.value,
    }
    if include_metadata:
        body["metadata"] = chatbot.metadata
    document: dict[str, Any] = {
        "version": EXPORT_VERSION,
        "exportedAt": _now_iso(),
        "chatbot": body,
    }
    if flows:
        document["whatsappFlows"] = [_flow_entry(f, include_metadata) for f in flows]
    return document


async def export_chatbot_from_store(
    store: BaseContextStore, chatbot_id: str,
    include_flows: bool = True, include_metadata: bool = True,
) -> Optional[dict[str, Any]]:
    chatbot = await store.get_chatbot(chatbot_id)
    if chatbot is None:
        return None
    flows: list[WhatsAppFlow] = []
    if include_flows:
        for flow_id in referenced_flow_ids(chatbot):
            flow = await store.get_whatsapp_flow(flow_id)
            if flow is not None:
                flows.append(flow)
    logger.info("chatbot_exported", chatbot_id=chatbot_id, flows=len(flows))
    return export_chatbot(chatbot, flows, include_metadata)


def _parse_chatbot(body: dict[str, Any], name: str) -> Chatbot:
    return Chatbot(
        name=name,
        description=body.get("description") or "",
        nodes=[Node.model_validate(n) for n in body.get("nodes") or []],
        edges=[Edge.model_validate(e) for e in body.get("edges") or []],
        metadata=body.get("metadata") or {},
    )


def validate_chatbot_import(document: Any) -> ImportValidation:
    """Check a chatbot export without writing anything."""
    if not isinstance(document, dict):
        return ImportValidation(is_valid=False, errors=["document must be a JSON object"])
    errors: list[str] = []
    warnings: list[str] = []
    version = document.get("version")
    if version not in SUPPORTED_VERSIONS:
        errors.append(f"unsupported export version {version!r}")
    body = document.get("chatbot")
    if not isinstance(body, dict):
        errors.append("missing chatbot section")
        return ImportValidation(is_valid=False, errors=errors)

    name = body.get("name") or ""
    if not name:
        errors.append("chatbot name is required")
    nodes = body.get("nodes") or []
    edges = body.get("edges") or []
    embedded = document.get("whatsappFlows") or []
    validation = ImportValidation(
        is_valid=False, chatbot_name=name, node_count=len(nodes),
        edge_count=len(edges), embedded_flows_count=len(embedded),
    )

    try:
        chatbot = _parse_chatbot(body, name or "import")
    except ValidationError as e:
        errors.extend(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
    else:
        graph = FlowGraph(chatbot)
        errors.extend(graph.validate())
        warnings.extend(graph.warnings())
        validation.referenced_flow_ids = referenced_flow_ids(chatbot)
        embedded_ids = {f.get("whatsappFlowId") for f in embedded if isinstance(f, dict)}
        for flow_id in validation.referenced_flow_ids:
            if flow_id not in embedded_ids:
                warnings.append(f"WhatsApp Flow {flow_id} is referenced but not embedded")

    validation.errors = errors
    validation.warnings = warnings
    validation.is_valid = not errors
    return validation


async def import_chatbot(
    store: BaseContextStore,
    document: Any,
    name: Optional[str] = None,
    set_active: bool = False,
    import_flows: bool = True,
) -> ImportResult:
    """Create a new chatbot (and its embedded flows) from an export document."""
    validation = validate_chatbot_import(document)
    if not validation.is_valid:
        raise ImportValidationError(validation.errors)

    body = document["chatbot"]
    chatbot = _parse_chatbot(body, name or body["name"])
    chatbot.is_active = set_active
    chatbot.status = ChatbotStatus.ACTIVE if set_active else ChatbotStatus.DRAFT
    warnings = list(validation.warnings)

    imported_flows = 0
    if import_flows:
        for entry in document.get("whatsappFlows") or []:
            remote_id = entry.get("whatsappFlowId")
            if remote_id and await store.get_whatsapp_flow(remote_id) is not None:
                warnings.append(f"WhatsApp Flow {remote_id} already exists; reusing it")
                continue
            await store.save_whatsapp_flow(_flow_from_entry(entry, remote_id=remote_id))
            imported_flows += 1

    await store.save_chatbot(chatbot)
    logger.info("chatbot_imported", chatbot_id=chatbot.id, name=chatbot.name,
                nodes=len(chatbot.nodes), flows=imported_flows)
    return ImportResult(
        message="Chatbot imported successfully",
        chatbot_id=chatbot.id,
        chatbot_name=chatbot.name,
        imported_at=datetime.now(timezone.utc),
        warnings=warnings,
        imported_flows_count=imported_flows,
    )


# ──────────────────────────────────────────────────────────────
#  WhatsApp Flows
# ──────────────────────────────────────────────────────────────

def export_whatsapp_flow(flow: WhatsAppFlow, include_metadata: bool = True) -> dict[str, Any]:
    entry = _flow_entry(flow, include_metadata)
    entry.pop("whatsappFlowId")
    document: dict[str, Any] = {
        "version": EXPORT_VERSION,
        "exportedAt": _now_iso(),
        "flow": entry,
    }
    if flow.data_source:
        document["dataSource"] = flow.data_source.model_dump()
    return document


def _flow_from_entry(
    entry: dict[str, Any], name: Optional[str] = None, remote_id: Optional[str] = None,
) -> WhatsAppFlow:
    if not isinstance(entry, dict) or not (name or entry.get("name")):
        raise ImportValidationError(["flow name is required"])
    flow_json = entry.get("flowJson")
    if not isinstance(flow_json, dict):
        raise ImportValidationError(["flowJson must be a JSON object"])
    return WhatsAppFlow(
        whatsapp_flow_id=remote_id,
        name=name or entry["name"],
        description=entry.get("description") or "",
        status=entry.get("status") or "DRAFT",
        categories=list(entry.get("categories") or []),
        flow_json=flow_json,
        endpoint_uri=entry.get("endpointUri"),
        is_active=entry.get("isActive", True),
        metadata=entry.get("metadata") or {},
    )


async def import_whatsapp_flow(
    store: BaseContextStore,
    document: Any,
    name: Optional[str] = None,
    create_in_meta: bool = False,
    client: Any = None,
) -> WhatsAppFlow:
    """
    Create a WhatsApp Flow from an export document. With `create_in_meta`
    the flow is also created through the Graph API client and the returned
    remote id is recorded; otherwise the flow stays local in DRAFT.
    """
    if not isinstance(document, dict):
        raise ImportValidationError(["document must be a JSON object"])
    if document.get("version") not in SUPPORTED_VERSIONS:
        raise ImportValidationError([f"unsupported export version {document.get('version')!r}"])
    flow = _flow_from_entry(document.get("flow"), name=name)
    if document.get("dataSource"):
        flow.data_source = DataSourceRef.model_validate(document["dataSource"])

    if create_in_meta:
        if client is None:
            raise ImportValidationError(["create_in_meta requires a WhatsApp client"])
        flow.whatsapp_flow_id = await client.create_flow(
            flow.name, flow.categories, flow.flow_json, endpoint_uri=flow.endpoint_uri,
        )
        flow.status = "DRAFT"

    await store.save_whatsapp_flow(flow)
    logger.info("whatsapp_flow_imported", flow_id=flow.id,
                remote_id=flow.whatsapp_flow_id, name=flow.name)
    return flow
