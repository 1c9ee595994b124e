"""Read-only content graph: courses, lessons and assessments plus prerequisite edges.

Structural checks (dangling references, prerequisite cycles) run when the
catalog is loaded, so gate evaluation can assume an acyclic graph.
"""
from __future__ import annotations

import json
from collections import defaultdict, deque
from pathlib import Path
from typing import Iterable

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from pathgate.core.errors import NotFoundError, ValidationError
from pathgate.schemas.content import AssessmentNode, CatalogDocument, ContentNode, CourseNode, LessonNode

_node_adapter = TypeAdapter(ContentNode)


class ContentCatalog:
    def __init__(self, nodes: Iterable):
        self._nodes: dict[str, CourseNode | LessonNode | AssessmentNode] = {}
        for raw in nodes:
            node = raw if isinstance(raw, (CourseNode, LessonNode, AssessmentNode)) else self._parse(raw)
            if node.id in self._nodes:
                raise ValidationError(f"Duplicate content id: {node.id}", field="id")
            self._nodes[node.id] = node
        self._check_references()
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for node in self._nodes.values():
            for prereq in node.prerequisites:
                self._dependents[prereq].append(node.id)
        self._check_acyclic()

    @staticmethod
    def _parse(raw: dict):
        try:
            return _node_adapter.validate_python(raw)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid content node", details=exc.errors(include_url=False)) from exc

    @classmethod
    def from_file(cls, path: str | Path) -> "ContentCatalog":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        try:
            document = CatalogDocument.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid catalog file {path}", details=exc.errors(include_url=False)) from exc
        return cls(document.nodes)

    def _check_references(self) -> None:
        for node in self._nodes.values():
            for prereq in node.prerequisites:
                if prereq not in self._nodes:
                    raise ValidationError(f"{node.id} lists unknown prerequisite {prereq}", field="prerequisites")
                if prereq == node.id:
                    raise ValidationError(f"{node.id} lists itself as a prerequisite", field="prerequisites")
            if node.mandatory_assessment_id is not None:
                target = self._nodes.get(node.mandatory_assessment_id)
                if not isinstance(target, AssessmentNode):
                    raise ValidationError(
                        f"{node.id} references unknown assessment {node.mandatory_assessment_id}",
                        field="mandatory_assessment_id",
                    )
            if isinstance(node, LessonNode) and not isinstance(self._nodes.get(node.course_id), CourseNode):
                raise ValidationError(f"Lesson {node.id} references unknown course {node.course_id}", field="course_id")
            if isinstance(node, AssessmentNode) and node.owner_id is not None and node.owner_id not in self._nodes:
                raise ValidationError(f"Assessment {node.id} references unknown owner {node.owner_id}", field="owner_id")

    def _check_acyclic(self) -> None:
        # Kahn's algorithm over prerequisite -> dependent edges.
        indegree = {node_id: len(node.prerequisites) for node_id, node in self._nodes.items()}
        queue = deque(node_id for node_id, degree in indegree.items() if degree == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for dependent in self._dependents.get(current, []):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    queue.append(dependent)
        if visited != len(self._nodes):
            cyclic = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
            raise ValidationError("Prerequisite graph contains a cycle", details={"nodes": cyclic})

    def __contains__(self, content_id: str) -> bool:
        return content_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_content(self, content_id: str):
        node = self._nodes.get(content_id)
        if node is None:
            raise NotFoundError("content", content_id)
        return node

    def get_assessment(self, assessment_id: str) -> AssessmentNode:
        node = self.get_content(assessment_id)
        if not isinstance(node, AssessmentNode):
            raise NotFoundError("assessment", assessment_id)
        return node

    def list_prerequisites(self, content_id: str) -> list[str]:
        return list(self.get_content(content_id).prerequisites)

    def list_dependents(self, content_id: str) -> list[str]:
        self.get_content(content_id)
        return list(self._dependents.get(content_id, []))

    def lessons_for_course(self, course_id: str) -> list[LessonNode]:
        lessons = [n for n in self._nodes.values() if isinstance(n, LessonNode) and n.course_id == course_id]
        return sorted(lessons, key=lambda n: (n.order_index, n.id))

    def owner_of(self, assessment_id: str) -> str | None:
        """Content node gated by this assessment (explicit owner, else the node that mandates it)."""
        assessment = self.get_assessment(assessment_id)
        if assessment.owner_id:
            return assessment.owner_id
        for node in self._nodes.values():
            if node.mandatory_assessment_id == assessment_id:
                return node.id
        return None

    def course_of(self, content_id: str) -> str | None:
        """Course a lesson or assessment belongs to; None for courses and loose assessments."""
        node = self.get_content(content_id)
        if isinstance(node, LessonNode):
            return node.course_id
        if isinstance(node, AssessmentNode):
            owner_id = self.owner_of(content_id)
            if owner_id is None:
                return None
            owner = self._nodes[owner_id]
            return owner.id if isinstance(owner, CourseNode) else self.course_of(owner_id)
        return None
