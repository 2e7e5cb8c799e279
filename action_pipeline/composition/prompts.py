"""
Prompt builder for the composition workflow.

Sections, in order: title, CONTEXT, CONTACT INFORMATION, SOURCE ACTIVITIES,
dependency listings, completed results with the division-of-labor rules,
INSTRUCTIONS, priorities. Empty sections are omitted.
"""

from typing import List, Optional, Sequence

from action_pipeline.composition.workflow import CompositionContext
from action_pipeline.models.action import ActionBase, ProposedAction
from action_pipeline.models.context import PipelineContext

_MAX_DETAIL_CHARS = 500


def format_amount(amount: Optional[float]) -> str:
    if amount is None:
        return "Not specified"
    return f"{amount:,.2f}"


def build_workflow_context(
    context: PipelineContext, content_type: str, audience_type: str
) -> CompositionContext:
    opportunity = context.opportunity
    return CompositionContext(
        content_type=content_type,
        audience_type=audience_type,
        deal_stage=opportunity.stage_name or "Unknown",
        customer_info=(
            f"Opportunity: {opportunity.name or 'Unnamed'}, "
            f"Value: ${format_amount(opportunity.amount)}"
        ),
    )


def _context_section(
    action: ActionBase,
    context: PipelineContext,
    parent: Optional[ProposedAction],
    detail_lines: Sequence[str],
) -> str:
    opportunity = context.opportunity
    lines = [
        "## CONTEXT",
        f"**Opportunity:** {opportunity.name or 'Unnamed Opportunity'} "
        f"({opportunity.stage_name or 'Unknown stage'})",
        f"**Value:** ${format_amount(opportunity.amount)}",
        f"**Action Type:** {f'Sub-action of {parent.type}' if parent else 'Main action'}",
        f"**Action Reasoning:** {action.reasoning or 'Not provided'}",
    ]
    if parent is not None:
        lines.append(f"**Parent Action Reasoning:** {parent.reasoning or 'Not provided'}")
    lines.extend(detail_lines)
    return "\n".join(lines)


def _contacts_section(context: PipelineContext, contact_emails: Sequence[str]) -> str:
    if not contact_emails:
        return ""
    blocks = []
    for email in contact_emails:
        contact = context.contact_by_email(email)
        if contact is None:
            continue
        blocks.append(
            f"**{contact.full_name or 'Unknown'}** ({contact.email})\n"
            f"- Title: {contact.title or 'Unknown'}\n"
            f"- Role: {contact.role or 'Unknown'}\n"
            f"- Engagement: {contact.engagement if contact.engagement is not None else 'Not specified'}\n"
            f"- Relationship: {contact.relationship or 'New contact'}"
        )
    body = "\n\n".join(blocks) if blocks else "Contact information not available"
    return f"## CONTACT INFORMATION\n{body}"


def _source_section(
    action: ActionBase, context: PipelineContext, parent: Optional[ProposedAction]
) -> str:
    # Sub-actions are justified by their parent's source activities
    source_ids = parent.source_activity_ids if parent else action.source_activity_ids
    activities = context.activities_for(source_ids)
    if not activities:
        return "## SOURCE ACTIVITIES\nNo specific source activities referenced"
    lines = [
        f"- **{a.date.isoformat()}**: {a.summary or a.title or 'Activity'}"
        for a in activities
    ]
    return "## SOURCE ACTIVITIES\n" + "\n".join(lines)


def _dependency_section(action: ActionBase, parent: Optional[ProposedAction]) -> str:
    if not action.depends_on:
        return ""
    listed = ", ".join(action.depends_on)
    if parent is not None:
        return f"## SUB-ACTION DEPENDENCIES\nThis sub-action depends on completion of: {listed}"
    return (
        "## MAIN ACTION DEPENDENCIES\n"
        f"This main action depends on completion of sub-actions: {listed}"
    )


def _summarize_details(details: dict) -> str:
    parts = []
    for key, value in details.items():
        if value is None or value == [] or value == "":
            continue
        text = str(value)
        if len(text) > _MAX_DETAIL_CHARS:
            text = text[:_MAX_DETAIL_CHARS] + "..."
        parts.append(f"  - {key}: {text}")
    return "\n".join(parts)


def _completed_section(completed: Sequence[ActionBase], is_sub_action: bool) -> str:
    if not completed:
        return ""
    lines = ["## COMPLETED SUB-ACTIONS OVERVIEW"]
    for sub in completed:
        lines.append(f"- **{sub.id}** ({sub.type}, {sub.status.value})")
        summary = _summarize_details(sub.details)
        if summary:
            lines.append(summary)

    lines.append("")
    lines.append("## STRICT DIVISION OF LABOR")
    lines.append(
        "- The completed sub-action outputs above are the ONLY source of factual "
        "claims (names, numbers, dates, findings)."
    )
    lines.append(
        "- Playbooks and any other external material may be consulted for "
        "structure and tone only. Never take facts from them."
    )
    if is_sub_action:
        lines.append("- Reuse the completed results as given; do not re-derive them.")
    else:
        lines.append(
            "- Synthesize the sub-action outputs into this action's content; do not "
            "contradict or extend them."
        )
    return "\n".join(lines)


def _instructions_section(
    instructions: Sequence[str], parent: Optional[ProposedAction]
) -> str:
    items: List[str] = list(instructions)
    if parent is not None:
        items.append(f"Explain how this supports the parent action: {parent.type}")
    if not items:
        return ""
    numbered = [f"{i}. {text}" for i, text in enumerate(items, start=1)]
    return "## INSTRUCTIONS\n" + "\n".join(numbered)


def build_prompt(
    title: str,
    action: ActionBase,
    context: PipelineContext,
    parent: Optional[ProposedAction] = None,
    completed: Sequence[ActionBase] = (),
    detail_lines: Sequence[str] = (),
    contact_emails: Sequence[str] = (),
    instructions: Sequence[str] = (),
) -> str:
    """Assemble the composition prompt for one action."""
    priorities = []
    if parent is not None:
        priorities.append(f"**Parent Action Priority:** {parent.priority}")
    priorities.append(f"**This Action Priority:** {action.priority}")

    sections = [
        f"# {title}",
        _context_section(action, context, parent, detail_lines),
        _contacts_section(context, contact_emails),
        _source_section(action, context, parent),
        _dependency_section(action, parent),
        _completed_section(completed, is_sub_action=parent is not None),
        _instructions_section(instructions, parent),
        "\n".join(priorities),
    ]
    return "\n\n".join(s for s in sections if s)
