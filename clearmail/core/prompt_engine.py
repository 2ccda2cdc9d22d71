"""
Prompt engine: Jinja2 templates for the classification chat messages.

The rendered user prompt asks the model for a JSON object with
`meets_criteria` (keep in inbox), `category` and `explanation`.
"""

import json
import logging
import os
from typing import Dict, List, Optional

from jinja2 import BaseLoader, Environment, StrictUndefined

from ..providers.base import ClassificationRequest

logger = logging.getLogger(__name__)


class PromptEngine:
    """
    Template-based prompt builder.

    Custom templates (`system.j2`, `classify.j2`) placed in `templates_dir`
    override the built-in ones.
    """

    DEFAULT_TEMPLATES = {
        "system": """You are an email analysis assistant{% if user_name %} for {{ user_name }}{% endif %}.
Your task is to:
1. Identify solicitation emails
2. Categorize emails into the provided folders
3. Determine if emails need immediate attention
Always respond with valid JSON and be particularly strict about filtering solicitations.""",

        "classify": """Analyze this email{% if user_name %} for {{ user_name }}{% endif %} and provide a JSON response.

Output Schema:
{
    "meets_criteria": boolean,    // Whether the email should be kept in primary inbox
    "category": string,           // One of: {{ categories_json }}
    "explanation": string         // Brief explanation of the decision and categorization
}

Keep Criteria (Primary Inbox):
- Direct personal communications
- Important updates from known services
- Financial updates from known institutions
{{ rules_keep }}

Reject Criteria (Auto Categories):
- Marketing emails from known services
- Newsletter updates
- Social media notifications
- Generic announcements
{{ rules_reject }}

Email to Analyze:
Subject: {{ subject }}
From: {{ sender }}
Date: {{ date }}
Body: {{ body }}

Respond with valid JSON only.""",
    }

    def __init__(
        self,
        categories: List[str],
        rules_keep: str = "",
        rules_reject: str = "",
        user_name: str = "",
        templates_dir: Optional[str] = None,
    ):
        """
        Args:
            categories: Closed set of destination categories
            rules_keep: Free-text keep rules appended to the prompt
            rules_reject: Free-text reject rules appended to the prompt
            user_name: Mailbox owner, used to personalize the prompt
            templates_dir: Optional directory with custom templates
        """
        self.categories = list(categories)
        self.rules_keep = rules_keep.strip()
        self.rules_reject = rules_reject.strip()
        self.user_name = user_name

        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self._templates: Dict[str, str] = dict(self.DEFAULT_TEMPLATES)
        if templates_dir and os.path.isdir(templates_dir):
            self._load_custom_templates(templates_dir)

    def _load_custom_templates(self, templates_dir: str) -> None:
        for filename in os.listdir(templates_dir):
            name, ext = os.path.splitext(filename)
            if ext not in (".j2", ".jinja2", ".txt") or name not in self.DEFAULT_TEMPLATES:
                continue
            with open(os.path.join(templates_dir, filename), "r", encoding="utf-8") as f:
                self._templates[name] = f.read()
            logger.debug(f"Loaded custom template: {name}")

    def _render(self, name: str, **context) -> str:
        template = self._env.from_string(self._templates[name])
        return template.render(**context)

    def parameters(self) -> Dict:
        """Prompt inputs that change the model output, for fingerprinting."""
        return {
            "categories": self.categories,
            "rules_keep": self.rules_keep,
            "rules_reject": self.rules_reject,
            "user_name": self.user_name,
            "templates": self._templates,
        }

    def build_messages(self, request: ClassificationRequest) -> List[Dict[str, str]]:
        """Render the system and user chat messages for `request`."""
        context = {
            "user_name": self.user_name,
            "categories": self.categories,
            "categories_json": json.dumps(self.categories),
            "rules_keep": self.rules_keep,
            "rules_reject": self.rules_reject,
            "subject": request.subject or "(no subject)",
            "sender": request.sender or "(unknown sender)",
            "date": request.date,
            "body": request.body or "(no body)",
        }
        logger.debug(
            f"Building analysis prompt (subject={request.subject!r}, body_length={len(request.body)})"
        )
        return [
            {"role": "system", "content": self._render("system", **context)},
            {"role": "user", "content": self._render("classify", **context)},
        ]
