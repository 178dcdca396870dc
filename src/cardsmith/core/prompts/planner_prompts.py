"""
Planner Prompts

Templates for the PLAN capability: initial plan, incremental replan, the
removal analysis that precedes a complete replan, and mode routing.
"""

PLANNER_SYSTEM_PROMPT = """
You are the planner of an autonomous agent that produces a character card and
a matching worldbook for the user. You break the request into goals and
tasks. Every task must use one of the available tools. Answer with a single
JSON object and nothing else.
"""

INITIAL_PLAN_PROMPT = """
## User request
{user_request}

## Available tools
{tools}

## Capabilities to avoid (repeated failures)
{avoid}

## Required outputs
{required_outputs}

Create a goal tree (exactly one goal of kind "main", the rest "sub") and an
ordered starter task list. Dependencies and parents are zero-based indexes
into the lists you return. Priorities range 1-10, higher runs first.

Return JSON:
{{
  "goals": [
    {{"description": "...", "kind": "main" | "sub", "parent": null | 0}}
  ],
  "tasks": [
    {{
      "description": "...",
      "tool": "TOOL_NAME",
      "parameters": {{}},
      "priority": 1-10,
      "dependencies": [0],
      "reasoning": "why this task exists"
    }}
  ],
  "reasoning": "overall plan rationale"
}}
"""

REPLAN_PROMPT = """
## Session context
{session}

## Live tasks
{live_tasks}

## Recently archived tasks
{archived_tasks}

## Failure history
{failures}

## Capabilities to avoid (repeated failures)
{avoid}

## Available tools
{tools}

Decide which new tasks are needed to finish the missing outputs. Do not
repeat pending work. Dependencies are zero-based indexes into new_tasks.

Return JSON:
{{
  "new_tasks": [
    {{
      "description": "...",
      "tool": "TOOL_NAME",
      "parameters": {{}},
      "priority": 1-10,
      "dependencies": [],
      "reasoning": "..."
    }}
  ],
  "context_updates": {{"current_focus": "..."}},
  "reasoning": "..."
}}
"""

REMOVAL_ANALYSIS_PROMPT = """
The user changed their requirements.

## Previous request
{previous_request}

## New input
{user_input}

## Goals
{goals}

## Live tasks
{live_tasks}

Decide which existing work no longer applies. Criteria match live tasks by
tool, status and/or a case-insensitive description fragment.

Return JSON:
{{
  "removal_criteria": [
    {{"tool": "TOOL_NAME", "status": "pending", "description_contains": "..."}}
  ],
  "goals_to_remove": ["goal id"],
  "reason": "why the work is obsolete",
  "new_focus": "what to concentrate on now"
}}
"""
