"""Turn pull request review comments into follow-up tasks."""

from __future__ import annotations

import hashlib
import re

from scribeswarm.hosting.base import ReviewComment
from scribeswarm.protocol.models import Task

_SIMPLE_RE = re.compile(r"\b(typo|spelling|format|whitespace|indent)", re.IGNORECASE)
_QUESTION_RE = re.compile(r"\b(why|how|what|explain|clarify)\b", re.IGNORECASE)

# Lower runs first; questions need a human answer more than code.
_PRIORITY = {"simple": 1, "complex": 2, "question": 3}


def categorize_feedback(body: str) -> str:
    if _SIMPLE_RE.search(body):
        return "simple"
    if _QUESTION_RE.search(body):
        return "question"
    return "complex"


def _feedback_id(comment: ReviewComment, index: int) -> str:
    digest = hashlib.sha1(
        f"{comment.author}|{comment.path}|{comment.line}|{comment.body}".encode("utf-8")
    ).hexdigest()[:8]
    return f"review-{index + 1:03d}-{digest}"


def extract_feedback_tasks(comments: list[ReviewComment]) -> list[Task]:
    tasks: list[Task] = []
    for comment in comments:
        body = comment.body.strip()
        if not body:
            continue
        category = categorize_feedback(body)
        context = ""
        if comment.path:
            context = f"File: {comment.path}"
            if comment.line is not None:
                context += f", Line: {comment.line}"
        first_line = body.splitlines()[0]
        tasks.append(
            Task(
                id=_feedback_id(comment, len(tasks)),
                name=f"Address review: {first_line[:60]}",
                description=f"{body}\n\n{context}".strip(),
                scope_paths=(comment.path,) if comment.path else (),
                priority=_PRIORITY[category],
                order=len(tasks),
                metadata={
                    "author": comment.author,
                    "category": category,
                    "kind": comment.kind,
                    "created_at": comment.created_at,
                    "context": context,
                },
            )
        )
    return tasks
