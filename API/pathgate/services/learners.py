from pathgate.content.catalog import ContentCatalog
from pathgate.core.errors import NotFoundError, ValidationError
from pathgate.core.logging import DOMAIN_LEARNERS, get_domain_logger
from pathgate.persistence.store import ProgressStore
from pathgate.schemas.content import CourseNode
from pathgate.schemas.progress import Learner

logger = get_domain_logger(__name__, DOMAIN_LEARNERS)


class LearnerService:
    def __init__(self, catalog: ContentCatalog, store: ProgressStore):
        self.catalog = catalog
        self.store = store

    async def register_learner(self, learner: Learner) -> Learner:
        for course_id in learner.enrolled_course_ids:
            self._require_course(course_id)
        if await self.store.get_learner(learner.id) is not None:
            raise ValidationError(f"Learner {learner.id} already exists", field="id")
        await self.store.save_learner(learner)
        logger.info("Registered learner=%s courses=%s", learner.id, learner.enrolled_course_ids)
        return learner

    async def get_learner(self, learner_id: str) -> Learner:
        learner = await self.store.get_learner(learner_id)
        if learner is None:
            raise NotFoundError("learner", learner_id)
        return learner

    async def enroll(self, learner_id: str, course_id: str) -> Learner:
        learner = await self.get_learner(learner_id)
        self._require_course(course_id)
        if course_id not in learner.enrolled_course_ids:
            learner.enrolled_course_ids.append(course_id)
            await self.store.save_learner(learner)
            logger.info("Enrolled learner=%s in course=%s", learner_id, course_id)
        return learner

    def _require_course(self, course_id: str) -> CourseNode:
        node = self.catalog.get_content(course_id)
        if not isinstance(node, CourseNode):
            raise NotFoundError("course", course_id)
        return node
