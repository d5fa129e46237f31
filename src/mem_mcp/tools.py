"""Tool table for the Mem MCP server.

Every tool is a fixed entry of name, description, pydantic input model and an
async handler that turns validated arguments into one Mem API call and renders
the JSON response as text. ``ToolRegistry`` binds the table to a ``MemAPI``
and ``build_server`` exposes it through a low-level MCP ``Server``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from mcp.server import Server
from mcp.types import CallToolResult, TextContent, Tool
from pydantic import BaseModel, Field, ValidationError

from mem_mcp.mem_client import MemAPI, MemAPIError

logger = logging.getLogger(__name__)

SERVER_NAME = "mem-mcp-server"
SERVER_VERSION = "1.1.0"

DETAIL_TRUNCATE = 500
LIST_TRUNCATE = 300
UNTITLED = "Untitled"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _note_block(note: dict, limit: int) -> str:
    lines = [f"### {note.get('title') or UNTITLED}", f"ID: {note.get('id')}"]
    if note.get("created_at"):
        lines.append(f"Created: {note['created_at']}")
    content = note.get("content") or note.get("snippet")
    if content:
        lines.append("")
        lines.append(truncate(content, limit))
    return "\n".join(lines)


def _collection_block(collection: dict) -> str:
    lines = [
        f"### {collection.get('title') or UNTITLED}",
        f"ID: {collection.get('id')}",
    ]
    if collection.get("description"):
        lines.append(f"Description: {truncate(collection['description'], LIST_TRUNCATE)}")
    if collection.get("note_count") is not None:
        lines.append(f"Notes: {collection['note_count']}")
    return "\n".join(lines)


def _page_hint(data: dict) -> str:
    cursor = data.get("next_page")
    if not cursor:
        return ""
    return f'\n\nMore results available. Pass page="{cursor}" to fetch the next page.'


def render_list(
    items: list[dict],
    header: Callable[[int], str],
    empty: str,
    block: Callable[[dict], str],
) -> str:
    """Render a header with the item count followed by one block per item."""
    if not items:
        return empty
    blocks = "\n\n".join(block(item) for item in items)
    return f"{header(len(items))}\n\n{blocks}"


# --- Input models ---


class MemItInput(BaseModel):
    input: str = Field(min_length=1, description="Content to send to Mem for processing")
    instructions: str | None = Field(
        None, description="Optional instructions on how Mem should process the input"
    )
    context: str | None = Field(None, description="Optional extra context for Mem")


class CreateNoteInput(BaseModel):
    content: str = Field(min_length=1, description="Markdown content of the note")
    collection_ids: list[str] | None = Field(
        None, description="IDs of collections to add the note to"
    )
    collection_titles: list[str] | None = Field(
        None, description="Titles of collections to add the note to"
    )


class ReadNoteInput(BaseModel):
    note_id: str = Field(min_length=1, description="ID of the note to read")


class ListNotesInput(BaseModel):
    limit: int = Field(20, ge=1, le=100, description="Maximum number of notes to return")
    page: str | None = Field(None, description="Pagination cursor from a previous call")
    order_by: str | None = Field(
        None, description="Sort order, e.g. created_at or updated_at"
    )
    collection_id: str | None = Field(None, description="Only list notes in this collection")


class SearchNotesInput(BaseModel):
    query: str = Field(min_length=1, description="Search query")
    collection_ids: list[str] | None = Field(
        None, description="Restrict the search to these collections"
    )


class ListCollectionsInput(BaseModel):
    limit: int = Field(20, ge=1, le=100, description="Maximum number of collections to return")
    page: str | None = Field(None, description="Pagination cursor from a previous call")


class SearchCollectionsInput(BaseModel):
    query: str = Field(min_length=1, description="Search query")


class AppendToNoteInput(BaseModel):
    note_id: str = Field(min_length=1, description="ID of the note to append to")
    content: str = Field(min_length=1, description="Content to append")


# --- Handlers ---


async def _mem_it(api: MemAPI, args: MemItInput) -> str:
    result = await api.mem_it(args.input, args.instructions, args.context)
    request_id = result.get("request_id") or result.get("id") or "Processing"
    return (
        "Content sent to Mem for processing!\n\n"
        f"Request ID: {request_id}\n\n"
        "Note: Mem processes content in the background. Your content will be "
        "organized and searchable in Mem shortly."
    )


async def _create_note(api: MemAPI, args: CreateNoteInput) -> str:
    note = await api.create_note(args.content, args.collection_ids, args.collection_titles)
    return (
        "Note created successfully!\n\n"
        f"ID: {note.get('id')}\n"
        f"Title: {note.get('title') or UNTITLED}\n"
        f"Created at: {note.get('created_at')}"
    )


async def _read_note(api: MemAPI, args: ReadNoteInput) -> str:
    note = await api.get_note(args.note_id)
    lines = [f"# {note.get('title') or UNTITLED}", f"ID: {note.get('id')}"]
    if note.get("created_at"):
        lines.append(f"Created: {note['created_at']}")
    if note.get("updated_at"):
        lines.append(f"Updated: {note['updated_at']}")
    lines.append("")
    lines.append(truncate(note.get("content") or "", DETAIL_TRUNCATE))
    return "\n".join(lines)


async def _list_notes(api: MemAPI, args: ListNotesInput) -> str:
    data = await api.list_notes(args.limit, args.page, args.order_by, args.collection_id)
    text = render_list(
        data.get("results") or [],
        header=lambda n: f"Found {n} notes:",
        empty="No notes found.",
        block=lambda note: _note_block(note, LIST_TRUNCATE),
    )
    return text + _page_hint(data)


async def _search_notes(api: MemAPI, args: SearchNotesInput) -> str:
    data = await api.search_notes(args.query, args.collection_ids)
    return render_list(
        data.get("results") or [],
        header=lambda n: f'Found {n} notes matching "{args.query}":',
        empty=f'No notes found matching "{args.query}"',
        block=lambda note: _note_block(note, DETAIL_TRUNCATE),
    ) + _page_hint(data)


async def _list_collections(api: MemAPI, args: ListCollectionsInput) -> str:
    data = await api.list_collections(args.limit, args.page)
    text = render_list(
        data.get("results") or [],
        header=lambda n: f"Found {n} collections:",
        empty="No collections found.",
        block=_collection_block,
    )
    return text + _page_hint(data)


async def _search_collections(api: MemAPI, args: SearchCollectionsInput) -> str:
    data = await api.search_collections(args.query)
    return render_list(
        data.get("results") or [],
        header=lambda n: f'Found {n} collections matching "{args.query}":',
        empty=f'No collections found matching "{args.query}"',
        block=_collection_block,
    ) + _page_hint(data)


async def _append_to_note(api: MemAPI, args: AppendToNoteInput) -> str:
    await api.append_to_note(args.note_id, args.content)
    return (
        "Content appended successfully!\n\n"
        f"Note ID: {args.note_id}\n\n"
        f"Appended content:\n{args.content}"
    )


# --- Registry ---


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[[MemAPI, Any], Awaitable[str]]
    # Used in upstream error messages, e.g. "Error reading note: ..."
    action: str

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(),
        )


TOOL_DEFINITIONS: dict[str, ToolDefinition] = {
    d.name: d
    for d in (
        ToolDefinition(
            name="mem_it",
            description=(
                "Send content to Mem for intelligent processing. Mem will "
                "process, organize and structure the input in the background."
            ),
            input_model=MemItInput,
            handler=_mem_it,
            action="sending content to Mem",
        ),
        ToolDefinition(
            name="create_note",
            description="Create a new note in Mem.",
            input_model=CreateNoteInput,
            handler=_create_note,
            action="creating note",
        ),
        ToolDefinition(
            name="read_note",
            description="Read a specific note by ID.",
            input_model=ReadNoteInput,
            handler=_read_note,
            action="reading note",
        ),
        ToolDefinition(
            name="list_notes",
            description="List notes, most recent first. Supports cursor pagination.",
            input_model=ListNotesInput,
            handler=_list_notes,
            action="listing notes",
        ),
        ToolDefinition(
            name="search_notes",
            description="Search notes by text query.",
            input_model=SearchNotesInput,
            handler=_search_notes,
            action="searching notes",
        ),
        ToolDefinition(
            name="list_collections",
            description="List collections. Supports cursor pagination.",
            input_model=ListCollectionsInput,
            handler=_list_collections,
            action="listing collections",
        ),
        ToolDefinition(
            name="search_collections",
            description="Search collections by text query.",
            input_model=SearchCollectionsInput,
            handler=_search_collections,
            action="searching collections",
        ),
        ToolDefinition(
            name="append_to_note",
            description="Append content to an existing note (legacy v0 API).",
            input_model=AppendToNoteInput,
            handler=_append_to_note,
            action="appending to note",
        ),
    )
}


def _error_result(text: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=True)


def _format_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'input'}: {e['msg']}"
        for e in error.errors()
    )


class ToolRegistry:
    """Tool table bound to one Mem API connection."""

    def __init__(
        self,
        api: MemAPI,
        definitions: dict[str, ToolDefinition] = TOOL_DEFINITIONS,
    ):
        self._api = api
        self._definitions = definitions

    def list_tools(self) -> list[Tool]:
        return [d.to_tool() for d in self._definitions.values()]

    async def call(self, name: str, arguments: dict | None) -> CallToolResult:
        definition = self._definitions.get(name)
        if definition is None:
            return _error_result(f"Unknown tool: {name}")

        try:
            args = definition.input_model.model_validate(arguments or {})
        except ValidationError as e:
            logger.info("Invalid input for %s: %s", name, e.error_count())
            return _error_result(f"Invalid input for {name}: {_format_validation_error(e)}")

        logger.info("Invoking tool: %s", name)
        try:
            text = await definition.handler(self._api, args)
        except MemAPIError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return _error_result(f"Error {definition.action}: {e}")
        return CallToolResult(content=[TextContent(type="text", text=text)])


def build_server(registry: ToolRegistry) -> Server:
    server = Server(SERVER_NAME, version=SERVER_VERSION)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return registry.list_tools()

    # The registry validates arguments itself
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict) -> CallToolResult:
        return await registry.call(name, arguments)

    return server
