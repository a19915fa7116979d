"""Thin MCP server for photo-search.

Delegates all work to the photo-search service daemon via HTTP.
No numpy or model imports in this process.
"""

import json
import logging

from mcp.server.fastmcp import FastMCP

from client import ServiceClient
from config import DEFAULT_TOP_K

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

mcp = FastMCP("photo-search")
client = ServiceClient()


def _format_results(results: list[dict]) -> list[str]:
    lines = []
    for i, r in enumerate(results, 1):
        meta = r.get("metadata", {})
        agents = ", ".join(r.get("matched_agents", []))
        lines.append(f"{i}. {meta.get('path', r['photo_id'])}  score={r['final_score']:.3f}  [{agents}]")
        if meta.get("taken_at"):
            lines.append(f"   taken {meta['taken_at']}")
    return lines


@mcp.tool()
def search(query: str, top_k: int = DEFAULT_TOP_K, fusion_policy: str = "") -> str:
    """Search photos with a natural-language query.

    The query is parsed into an intent (people, place, time, keywords) and
    run through keyword, semantic and people search concurrently. Results
    are fused into one ranked list.

    Args:
        query: What to look for, e.g. "photos with mom at the beach in 2023" or "去年和小明在海边".
        top_k: Number of results to return (default 20).
        fusion_policy: "weighted" or "rrf". Empty uses the configured default.
    """
    options = {"fusion_policy": fusion_policy} if fusion_policy else None
    resp = client.search(query, top_k, options)
    intent = resp["intent"]
    header = (
        f"Intent: {intent['type']} (confidence {resp['confidence']:.2f}"
        f"{', rule fallback' if intent['fallback_used'] else ''})"
    )
    if not resp["results"]:
        reason = resp["diagnostics"].get("error")
        return f"{header}\nNo matching photos found{f' ({reason})' if reason else ''}."
    return "\n".join([header, *_format_results(resp["results"])])


@mcp.tool()
def find_similar(photo_id: str, top_k: int = 20) -> str:
    """Find photos that look like a given photo.

    Uses the stored embedding, no model call required.

    Args:
        photo_id: Identifier of the source photo (must already have an embedding).
        top_k: Number of results to return (default 20).
    """
    return client.find_similar(photo_id, top_k)


@mcp.tool()
def parse_query(query: str) -> str:
    """Show how a search query is interpreted.

    Args:
        query: The search text to analyze.
    """
    return json.dumps(client.parse_query(query), indent=2, ensure_ascii=False)


@mcp.tool()
def add_photo(
    photo_id: str,
    path: str,
    title: str = "",
    description: str = "",
    tags: list[str] | None = None,
    taken_at: str = "",
    location: str = "",
) -> str:
    """Add or update a photo and queue it for embedding.

    Args:
        photo_id: Stable identifier for the photo.
        path: Absolute path to the image file.
        title: Optional title.
        description: Optional free-text description.
        tags: Optional keyword tags.
        taken_at: Capture time as ISO 8601, e.g. "2023-07-14T10:22:00".
        location: Optional place name.
    """
    body = {
        "photo_id": photo_id,
        "path": path,
        "title": title or None,
        "description": description or None,
        "tags": tags or [],
        "taken_at": taken_at or None,
        "location": location or None,
    }
    client.add_photo(body)
    return f"Added {photo_id}, queued for embedding."


@mcp.tool()
def generate_vectors(photo_id: str, priority: int = 0, force: bool = False) -> str:
    """Queue a photo for embedding generation.

    Args:
        photo_id: Photo to embed.
        priority: Higher runs first (default 0).
        force: Regenerate even if an embedding already exists.
    """
    task = client.enqueue(photo_id, priority=priority, force=force)
    return f"{task['photo_id']}: {task['status']} (priority {task['priority']})"


@mcp.tool()
def queue_status() -> str:
    """Report progress of background embedding generation."""
    s = client.queue_stats()
    lines = [
        f"Pending: {s['pending']}",
        f"Processing: {s['processing']}",
        f"Completed: {s['completed']}",
        f"Failed: {s['failed']}",
        f"Workers: {s['max_concurrent']}{' (paused)' if s['paused'] else ''}",
    ]
    return "\n".join(lines)


@mcp.tool()
def index_status() -> str:
    """Report the current state of the photo library and indexes."""
    s = client.status()
    vi = s["vector_index"]
    faces = s["faces"]
    lines = [
        f"Photos: {s['photos']}",
        f"Keyword index: {s['keyword_index']} photos",
        f"Vector index: {vi['count']} vectors ({vi['mode']})",
        f"Faces: {faces['total_faces']} ({faces['unmatched_faces']} unmatched), {faces['persons']} people",
        f"Queue: {s['queue']['pending']} pending, {s['queue']['failed']} failed",
    ]
    return "\n".join(lines)


@mcp.tool()
def auto_match_faces(auto_threshold: float = 0.0, suggest_threshold: float = 0.0) -> str:
    """Match unassigned faces to known people and cluster the rest.

    Faces above the auto threshold are assigned directly, faces between the
    two thresholds become suggestions, and the remainder are grouped into
    clusters of likely-same people.

    Args:
        auto_threshold: Similarity for automatic assignment. 0 uses the configured value.
        suggest_threshold: Similarity for a suggestion. 0 uses the configured value.
    """
    options = {}
    if auto_threshold:
        options["auto_threshold"] = auto_threshold
    if suggest_threshold:
        options["suggest_threshold"] = suggest_threshold
    report = client.auto_match(options)
    return (
        f"Matched {len(report['matched'])} faces, {len(report['suggestions'])} suggestions, "
        f"{len(report['clusters'])} new clusters, {report['skipped']} skipped."
    )


@mcp.tool()
def assign_face(face_id: str, person_id: str) -> str:
    """Assign a face to a person. Manual assignments are never overridden by auto-matching.

    Args:
        face_id: Face to assign.
        person_id: Target person.
    """
    result = client.assign_face(face_id, person_id)
    return f"Assigned {result['assigned']} face(s) to {result['person_id']}."


@mcp.tool()
def find_person(query: str) -> str:
    """Look up people by name, display name or nickname.

    Args:
        query: Name or part of a name.
    """
    matches = client.search_persons(query)
    if not matches:
        return "No matching people."
    return "\n".join(
        f"- {m['display_name'] or m['name']} ({m['person_id']}): {m['face_count']} faces, score {m['score']:.2f}"
        for m in matches
    )


@mcp.tool()
def person_photos(person_id: str, year: int = 0, month: int = 0, limit: int = 50) -> str:
    """List photos of a person, newest first.

    Args:
        person_id: Person to list.
        year: Restrict to a year (0 for all).
        month: Restrict to a month of that year (0 for all; needs a year).
        limit: Maximum photos to return (default 50).
    """
    result = client.person_photos(person_id, year or None, month or None, limit)
    if not result["photos"]:
        return f"No photos of {result['name']}."
    lines = [f"{result['name']}: {result['total']} photos ({result['earliest']} to {result['latest']})"]
    lines.extend(f"- {p['path']}" for p in result["photos"])
    return "\n".join(lines)


if __name__ == "__main__":
    mcp.run(transport="stdio")
