"""
Thinking Prompts - Evaluation, Improvement and Routing

Templates shared by every capability's thinking module. Capability-specific
criteria are substituted into ``{criteria}``; all templates ask for a single
JSON object so responses can be validated before use.
"""

THINKING_SYSTEM_PROMPT = """
You are the quality reviewer of an autonomous character card and worldbook
generation agent. You judge intermediate results strictly and answer with a
single JSON object and nothing else.
"""

EVALUATION_PROMPT = """
## Capability
{capability}

## Evaluation criteria
{criteria}

## Session context
{session}

## Result to evaluate (attempt {attempt})
{result}

Return JSON:
{{
  "is_satisfied": true | false,
  "quality_score": 0-100,
  "reasoning": "short justification",
  "improvement_needed": ["concrete shortcoming", "..."],
  "next_action": "continue" | "improve" | "complete"
}}
"""

IMPROVEMENT_PROMPT = """
## Capability
{capability}

## Session context
{session}

## Current result
{result}

## Evaluation
Score: {score}/100
Reasoning: {reasoning}
Shortcomings: {shortcomings}

{guidance}

Return JSON:
{{
  "focus_areas": ["area to concentrate on"],
  "specific_requests": ["precise change to make"],
  "quality_target": 0-100,
  "max_attempts": 1-5
}}
"""

ROUTING_PROMPT = """
## Capability
{capability}

## Session context
{session}

## Available sub-behaviors
{options}

Pick the sub-behavior that best serves the session right now.

Return JSON:
{{
  "selected_sub_tool": "one of the names above",
  "reasoning": "why",
  "confidence": 0-100
}}
"""
