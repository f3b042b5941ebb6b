# learnpay/catalog.py
"""Read access to course metadata plus the enrollment counter."""
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from learnpay import models


def get_course(db: Session, course_id: Optional[str]) -> Optional[models.Course]:
    if not course_id:
        return None
    return db.get(models.Course, course_id)


def get_topic(course: models.Course, section_index: int, topic_index: int) -> Optional[dict]:
    if section_index < 0 or topic_index < 0:
        return None
    sections = course.sections or []
    if section_index >= len(sections):
        return None
    topics = sections[section_index].get("topics") or []
    if topic_index >= len(topics):
        return None
    return topics[topic_index]


def total_topics(course: models.Course) -> int:
    return sum(len(section.get("topics") or []) for section in course.sections or [])


def increment_enrollment_count(db: Session, course_id: str) -> None:
    # single UPDATE so concurrent activations never lose an increment
    db.execute(
        update(models.Course)
        .where(models.Course.id == course_id)
        .values(enrollment_count=models.Course.enrollment_count + 1)
    )
