"""Validation of assessment configuration and evaluator skill results."""

import logging
from typing import Dict, List, NamedTuple, Sequence

from errors import ConfigurationError, SkillLevelIntegrityError
from schemas import FinalEvaluation, Skill, SkillLevel

logger = logging.getLogger(__name__)


class ResolvedSkillResult(NamedTuple):
    skill: Skill
    level: SkillLevel
    feedback: str


def validate_assessment_config(skills: Sequence[Skill], questions_per_skill: int) -> None:
    """Reject assessments the engine cannot run.

    Raises ConfigurationError if validation fails.
    """
    if not skills:
        raise ConfigurationError("Assessment has no skills")
    if questions_per_skill < 1:
        raise ConfigurationError("questions_per_skill must be at least 1")

    for skill in skills:
        if not skill.levels:
            raise ConfigurationError(f"Skill {skill.id} ({skill.name}) has no levels")
        standard = [level for level in skill.levels if level.standard]
        if len(standard) != 1:
            raise ConfigurationError(
                f"Skill {skill.id} ({skill.name}) must have exactly one standard level, found {len(standard)}"
            )


def validate_skill_results(reply: FinalEvaluation, skills: Sequence[Skill]) -> List[ResolvedSkillResult]:
    """Cross-check a final reply against the assessment's level table.

    Every pair must reference a known level of the stated skill and every
    skill must be covered exactly once. Raises SkillLevelIntegrityError
    otherwise.
    """
    skills_by_id: Dict[int, Skill] = {skill.id: skill for skill in skills}
    levels_by_id: Dict[int, tuple[Skill, SkillLevel]] = {}
    for skill in skills:
        for level in skill.levels:
            levels_by_id[level.id] = (skill, level)

    resolved: Dict[int, ResolvedSkillResult] = {}
    for item in reply.skill_results:
        skill = skills_by_id.get(item.skill_id)
        if skill is None:
            logger.error("Evaluator referenced unknown skill %s", item.skill_id)
            raise SkillLevelIntegrityError(f"Skill {item.skill_id} is not part of this assessment")

        owner = levels_by_id.get(item.skill_level_id)
        if owner is None:
            logger.error("Evaluator referenced unknown skill level %s", item.skill_level_id)
            raise SkillLevelIntegrityError(f"Skill level {item.skill_level_id} does not exist")

        owner_skill, level = owner
        if owner_skill.id != skill.id:
            logger.error(
                "Skill level %s belongs to skill %s, not %s", level.id, owner_skill.id, skill.id
            )
            raise SkillLevelIntegrityError(
                f"Skill level {level.id} does not belong to skill {skill.id}"
            )

        if skill.id in resolved:
            logger.error("Evaluator graded skill %s more than once", skill.id)
            raise SkillLevelIntegrityError(f"Skill {skill.id} was graded more than once")
        resolved[skill.id] = ResolvedSkillResult(skill=skill, level=level, feedback=item.feedback)

    missing = [skill.id for skill in skills if skill.id not in resolved]
    if missing:
        logger.error("Evaluator did not grade skills %s", missing)
        raise SkillLevelIntegrityError(f"Missing results for skills {missing}")

    return [resolved[skill.id] for skill in skills]
