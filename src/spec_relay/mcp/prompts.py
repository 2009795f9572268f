"""MCP prompt templates for picking up and handing off work."""

from spec_relay.mcp.server import mcp


@mcp.prompt()
def resume_project(project_id: str) -> str:
    """Generate a prompt to pick up a project where the last session stopped."""
    return (
        f"Resume work on project '{project_id}'.\n\n"
        f"Call workflow_resume to see the current phase, the latest checkpoint and the "
        f"pending tasks, then context_load to read what earlier sessions saved. "
        f"Continue with the first pending task."
    )


@mcp.prompt()
def close_phase(project_id: str, phase: str) -> str:
    """Generate a prompt to finish a phase and hand it off."""
    return (
        f"Finish the '{phase}' phase of project '{project_id}'.\n\n"
        f"Check each phase document with document_status. When they are complete, call "
        f"workflow_handoff with the deliverables and notes. Tag lines in the notes with "
        f"'Decision:', 'Important:' or 'Note:' to list them as key points."
    )
