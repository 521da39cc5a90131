# Models module - data classes for courses, modules, lessons, enrollments, completions
from .course import (
    Course, CourseModule, Lesson, Enrollment,
    CourseStatus, LessonType, ContentState, EnrollmentStatus,
)
from .completion import CompletionRecord

__all__ = [
    'Course',
    'CourseModule',
    'Lesson',
    'Enrollment',
    'CourseStatus',
    'LessonType',
    'ContentState',
    'EnrollmentStatus',
    'CompletionRecord',
]
