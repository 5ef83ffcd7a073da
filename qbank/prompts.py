"""
Centralized prompt templates for qbank-ingest.

All LLM prompts are defined here to make prompt engineering easier
and to ensure consistency across the codebase.
"""

# =============================================================================
# Question Extraction Prompts
# =============================================================================

QUESTION_EXTRACTION_SYSTEM_PROMPT = """You are a deterministic content transfer engine for exam question banks.
You extract questions from scanned exam pages VERBATIM. You never summarize, rewrite,
answer from your own knowledge, or fill gaps with assumptions.

Each question usually spans one page for the question (vignette, optional image,
answer choices) followed by one or more explanation pages.

If a field is missing in the source, return it as null. Never guess the correct answer."""


QUESTION_EXTRACTION_PROMPT = """Extract ALL questions from the exam pages listed below.

Document: {source_name}
Subject: {subject}
System: {system}
Category: {category}

Pages:
{pages}

Return ONLY valid JSON with this exact structure:
{{
  "questions": [
    {{
      "question_text": "Complete question text exactly as written",
      "options": [
        {{"letter": "A", "text": "Option text", "is_correct": false, "explanation": null}},
        {{"letter": "B", "text": "Option text", "is_correct": true, "explanation": "Why B is correct"}}
      ],
      "correct_answer": "B",
      "explanation": "Complete explanation including the educational objective",
      "has_image": false,
      "image_description": null,
      "difficulty": "medium",
      "category": "Topic of the question",
      "question_pages": [1],
      "explanation_pages": [2, 3]
    }}
  ]
}}

Rules:
- Process every question on every page, in page order
- Mark is_correct only where the source marks the answer
- Page numbers refer to the numbers in the page list above
- No markdown, no commentary"""


def format_prompt(template: str, **kwargs) -> str:
    """
    Format a prompt template with the given arguments.

    Args:
        template: Prompt template string
        **kwargs: Values to substitute

    Returns:
        Formatted prompt string
    """
    return template.format(**kwargs)
