"""
Capability Prompts - ASK_USER, SEARCH, OUTPUT

Generation prompts for the content-producing capabilities. Improvement
instructions from the thinking module are appended via
``IMPROVEMENT_SUFFIX``.
"""

ASK_USER_SYSTEM_PROMPT = """
You help an agent gather the information it needs from the user to create a
character card and worldbook. Ask few, precise questions. Answer with a single
JSON object.
"""

CONTEXTUAL_QUESTION_PROMPT = """
## Session context
{session}

## What the agent wants to learn
{topic}

Write one friendly message asking the user the most important open questions
(at most three).

Return JSON:
{{"question": "...", "missing": ["information still missing"]}}
"""

MULTIPLE_CHOICE_PROMPT = """
## Session context
{session}

## Decision to make
{topic}

Offer the user a short question with two to five distinct options.

Return JSON:
{{"question": "...", "choices": ["option", "..."], "missing": []}}
"""

SEARCH_SYSTEM_PROMPT = """
You collect reference material and inspiration for fictional character and
world design. Answer with a single JSON object.
"""

SEARCH_PROMPT = """
## Session context
{session}

## Query
{query}

## Raw search hits
{hits}

Summarize what is useful for the character and world. Drop irrelevant hits.

Return JSON:
{{
  "summary": "...",
  "inspirations": ["..."],
  "references": [{{"title": "...", "source": "...", "note": "..."}}]
}}
"""

OUTPUT_SYSTEM_PROMPT = """
You write character cards and worldbooks for role-play front ends. Answer with
a single JSON object that matches the requested shape exactly.
"""

CHARACTER_PROMPT = """
## Session context
{session}

## Gathered knowledge
{knowledge}

## Instructions
{instructions}

Write the character card.

Return JSON:
{{
  "name": "...",
  "description": "...",
  "personality": "...",
  "scenario": "...",
  "first_mes": "...",
  "mes_example": "...",
  "creator_notes": "...",
  "tags": ["..."]
}}
"""

WORLDBOOK_PROMPT = """
## Session context
{session}

## Character
{character}

## Gathered knowledge
{knowledge}

## Instructions
{instructions}

Write worldbook entries for places, factions, lore and rules of the world.

Return JSON:
{{
  "entries": [
    {{"keys": ["keyword"], "comment": "entry title", "content": "...", "order": 100}}
  ]
}}
"""

IMPROVEMENT_SUFFIX = """

## Revise the previous result
Previous result:
{previous}

Focus areas: {focus_areas}
Specific requests: {specific_requests}
Target quality: {quality_target}/100
"""
