"""
Course Content Engine CLI

Load courses, lessons and quizzes from a local course database.

Usage:
    course-engine seed course.yaml
    course-engine --user u1 show COURSE_ID --lesson LESSON_ID
    course-engine --user u1 lesson LESSON_ID
    course-engine --user u1 complete LESSON_ID --score 80
    course-engine --user u1 quiz LESSON_ID --answer q1=a --answer q2=x,y
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

import yaml

from .config import load_config
from .core.planner import AccessMode
from .core.service import CourseEngineService
from .exceptions import CourseEngineError, IncompleteSubmissionError
from .logging_config import get_logger, log_exception, setup_logging

logger = get_logger('cli')


def parse_answer(raw: str) -> tuple[str, object]:
    """Split ``QID=OPT[,OPT]`` into a question id and its answer."""
    if '=' not in raw:
        raise argparse.ArgumentTypeError(f"Expected QID=ANSWER, got '{raw}'")
    question_id, _, value = raw.partition('=')
    if ',' in value:
        return question_id.strip(), [v.strip() for v in value.split(',') if v.strip()]
    return question_id.strip(), value.strip()


# ==================== COMMANDS ====================

def cmd_seed(args, service: CourseEngineService):
    """Import one or more courses from a YAML document."""
    with open(args.file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    courses = data.get('courses', [data]) if isinstance(data, dict) else data
    for course in courses:
        course_id = service.repository.store.import_course(course)
        print(f"Imported course: {course.get('title', course_id)} (id: {course_id})")


async def cmd_show(args, service: CourseEngineService):
    """Show a course with lesson detail for the planned modules."""
    snapshot = await service.load_course(
        args.course_id,
        mode=AccessMode(args.mode),
        focus_module_id=args.module,
        focus_lesson_id=args.lesson,
    )

    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2, default=str))
        return

    course = snapshot.course
    print(f"\n=== {course.title} ===")
    print(f"Status: {course.status.value}")
    if course.short_description:
        print(course.short_description)
    if snapshot.enrollment:
        print(f"Progress: {snapshot.enrollment.progress}% ({snapshot.enrollment.status.value})")

    for module in snapshot.modules:
        print(f"\n[{module.id}] {module.title} ({len(module.lesson_ids)} lessons)")
        if not module.lessons_loaded:
            print("  (summary only)")
            continue
        for lesson in module.lessons:
            mark = 'x' if snapshot.completion_map.get(lesson.id) else ' '
            print(f"  [{mark}] {lesson.title} <{lesson.type.value}> ({lesson.id})")


async def cmd_lesson(args, service: CourseEngineService):
    """Show a lesson with its full content."""
    lesson = await service.load_lesson_content(args.lesson_id, mode=AccessMode(args.mode))
    print(f"\n=== {lesson.title} ===")
    print(f"Type: {lesson.type.value} | Course: {lesson.course_id}")
    print(json.dumps(lesson.content or {}, indent=2, default=str))


async def cmd_complete(args, service: CourseEngineService):
    """Mark a lesson complete for the current user."""
    lesson = await service.load_lesson_content(args.lesson_id)
    enrollment = await service.load_enrollment(lesson.course_id)
    if enrollment is None:
        print(f"Not enrolled in course {lesson.course_id}")
        return 1

    mutation = await service.mark_lesson_complete(
        lesson.id, lesson.course_id, enrollment.id, score=args.score
    )
    if mutation is None:
        print("No user given, nothing recorded (use --user)")
        return 1
    print(f"Marked complete: {lesson.title}")


async def cmd_uncomplete(args, service: CourseEngineService):
    """Clear a lesson's completion for the current user."""
    lesson = await service.load_lesson_content(args.lesson_id)
    mutation = await service.unmark_lesson_complete(lesson.id, lesson.course_id)
    if mutation is None:
        print("No user given, nothing recorded (use --user)")
        return 1
    print(f"Marked incomplete: {lesson.title}")


async def cmd_quiz(args, service: CourseEngineService):
    """Grade a quiz submission."""
    answers = dict(args.answer or [])
    try:
        result = await service.submit_quiz(args.lesson_id, answers)
    except IncompleteSubmissionError as e:
        print(f"Unanswered questions: {', '.join(e.missing_question_ids)}")
        return 1

    print(f"Score: {result.score}%")
    print(f"Correct: {result.strict_correct_count}/{result.total_questions}")
    for question_id, credit in result.per_question_credit.items():
        print(f"  {question_id}: {credit:.0%}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='course-engine',
        description="Course Content Engine - load courses, lessons and quizzes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--config', '-c', help='Path to config file')
    parser.add_argument('--db', help='Path to the course database (overrides config)')
    parser.add_argument('--user', '-u', help='Signed-in user id')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    parser.add_argument('--log-file', help='Write logs to this file')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # seed
    seed_parser = subparsers.add_parser('seed', help='Import courses from YAML')
    seed_parser.add_argument('file', help='YAML file with a course or a list of courses')

    # show
    show_parser = subparsers.add_parser('show', help='Show a course')
    show_parser.add_argument('course_id', help='Course ID')
    show_parser.add_argument('--mode', '-m', default=AccessMode.LEARNING.value,
                             choices=[m.value for m in AccessMode], help='Access mode')
    show_parser.add_argument('--module', help='Focused module ID')
    show_parser.add_argument('--lesson', help='Focused lesson ID')
    show_parser.add_argument('--json', action='store_true', help='Print JSON')

    # lesson
    lesson_parser = subparsers.add_parser('lesson', help='Show lesson content')
    lesson_parser.add_argument('lesson_id', help='Lesson ID')
    lesson_parser.add_argument('--mode', '-m', default=AccessMode.LEARNING.value,
                               choices=[m.value for m in AccessMode], help='Access mode')

    # complete / uncomplete
    complete_parser = subparsers.add_parser('complete', help='Mark a lesson complete')
    complete_parser.add_argument('lesson_id', help='Lesson ID')
    complete_parser.add_argument('--score', type=int, help='Score (0-100)')

    uncomplete_parser = subparsers.add_parser('uncomplete', help='Mark a lesson incomplete')
    uncomplete_parser.add_argument('lesson_id', help='Lesson ID')

    # quiz
    quiz_parser = subparsers.add_parser('quiz', help='Submit quiz answers')
    quiz_parser.add_argument('lesson_id', help='Quiz lesson ID')
    quiz_parser.add_argument('--answer', '-a', action='append', type=parse_answer,
                             help='QID=OPT or QID=OPT,OPT (repeatable)')

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    try:
        config = load_config(args.config)
    except CourseEngineError as e:
        print(f"Configuration error: {e}")
        return 1

    if args.db:
        config.database.path = args.db

    setup_logging(
        level='DEBUG' if args.verbose else config.logging.level,
        log_file=args.log_file or config.logging.file,
        json_format=config.logging.json_format,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
    )

    user_id = args.user
    service = CourseEngineService.from_config(config, user_provider=lambda: user_id)

    commands = {
        'show': cmd_show,
        'lesson': cmd_lesson,
        'complete': cmd_complete,
        'uncomplete': cmd_uncomplete,
        'quiz': cmd_quiz,
    }

    try:
        if args.command == 'seed':
            cmd_seed(args, service)
            return 0
        return asyncio.run(commands[args.command](args, service)) or 0
    except CourseEngineError as e:
        log_exception(logger, e, f"{args.command} failed")
        print(f"Error: {e}")
        return 1
    finally:
        service.close()


if __name__ == '__main__':
    sys.exit(main())
