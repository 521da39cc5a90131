"""SQLite content store standing in for the remote data service.

Offers the capabilities the engine relies on: get-by-id, batch reads by parent
id (``IN`` queries), metadata-only versus full-content column selection, and
idempotent upsert/delete of completion records. Enrollment progress is
recomputed here from completion records, as a backend would.
"""

import json
import math
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable, Optional

from ..exceptions import ConstraintViolationError, StoreUnavailableError, StoreWriteError
from ..logging_config import get_logger
from ..models import (
    CompletionRecord, Course, CourseModule, CourseStatus, Enrollment,
    EnrollmentStatus, Lesson, LessonType,
)

logger = get_logger('store')

# Columns selected for metadata-only lesson reads
_LESSON_META_COLUMNS = "l.id, l.module_id, m.course_id, l.title, l.type, l.order_index, l.created_at, l.updated_at"


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_ts(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _placeholders(values: Iterable) -> str:
    return ", ".join("?" for _ in values)


class ContentStore:
    """SQLite database for course content, enrollments and completions.

    The connection may be used from worker threads; every statement runs
    under an internal lock.

    Supports context manager protocol for automatic cleanup:
        with ContentStore('data/course_engine.db') as store:
            store.save_course(course)
    """

    def __init__(self, db_path: str = "data/course_engine.db"):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._connect()
        self._init_tables()

    def _connect(self):
        """Establish database connection."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            # Enable foreign key constraints
            self.conn.execute("PRAGMA foreign_keys = ON")
            logger.debug(f"Connected to database: {self.db_path}")
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StoreUnavailableError(str(self.db_path), reason=str(e))

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures database is closed."""
        self.close()
        return False

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Database connection closed")

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions.

        Automatically commits on success, rolls back on exception.

        Usage:
            with store.transaction():
                store.conn.execute(...)
        """
        with self._lock:
            try:
                yield
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                logger.error(f"Transaction rolled back (integrity error): {e}")
                raise ConstraintViolationError(str(e))
            except sqlite3.OperationalError:
                self.conn.rollback()
                raise
            except Exception as e:
                self.conn.rollback()
                logger.error(f"Transaction rolled back: {e}")
                raise StoreWriteError("transaction", reason=str(e))

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _init_tables(self):
        """Create content tables if they don't exist."""
        logger.debug("Initializing content tables")
        self.conn.executescript('''
            CREATE TABLE IF NOT EXISTS courses (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                short_description TEXT,
                status TEXT DEFAULT 'draft',
                author_id TEXT,
                cover_image TEXT,
                category TEXT,
                tags TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS modules (
                id TEXT PRIMARY KEY,
                course_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                order_index INTEGER NOT NULL,
                FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS lessons (
                id TEXT PRIMARY KEY,
                module_id TEXT NOT NULL,
                title TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'text',
                order_index INTEGER NOT NULL,
                content TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (module_id) REFERENCES modules(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                course_id TEXT NOT NULL,
                progress INTEGER DEFAULT 0,
                status TEXT DEFAULT 'active',
                enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_accessed_at TIMESTAMP,
                FOREIGN KEY (course_id) REFERENCES courses(id) ON DELETE CASCADE,
                UNIQUE(user_id, course_id)
            );

            -- One record per learner and lesson; lesson_id is not a foreign
            -- key so records can outlive deleted lessons until cleaned up
            CREATE TABLE IF NOT EXISTS lesson_completions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                lesson_id TEXT NOT NULL,
                course_id TEXT NOT NULL,
                enrollment_id TEXT NOT NULL,
                completed_at TIMESTAMP NOT NULL,
                score INTEGER,
                data TEXT,
                UNIQUE(user_id, lesson_id)
            );

            CREATE INDEX IF NOT EXISTS idx_modules_course ON modules(course_id, order_index);
            CREATE INDEX IF NOT EXISTS idx_lessons_module ON lessons(module_id, order_index);
            CREATE INDEX IF NOT EXISTS idx_enrollments_user ON enrollments(user_id);
            CREATE INDEX IF NOT EXISTS idx_completions_course_user ON lesson_completions(course_id, user_id);
        ''')
        self.conn.commit()

    # ==================== COURSE OPERATIONS ====================

    def save_course(self, course: Course) -> str:
        """Save or update a course and return its ID."""
        course.id = course.id or _new_id()
        logger.debug(f"Saving course: {course.id}")
        with self.transaction():
            self.conn.execute('''
                INSERT INTO courses (
                    id, title, description, short_description, status,
                    author_id, cover_image, category, tags, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title,
                    description=excluded.description,
                    short_description=excluded.short_description,
                    status=excluded.status,
                    author_id=excluded.author_id,
                    cover_image=excluded.cover_image,
                    category=excluded.category,
                    tags=excluded.tags,
                    updated_at=CURRENT_TIMESTAMP
            ''', (
                course.id, course.title, course.description, course.short_description,
                course.status.value, course.author_id, course.cover_image,
                course.category, json.dumps(course.tags),
            ))
        return course.id

    def get_course(self, course_id: str) -> Optional[Course]:
        """Get basic course information by ID."""
        rows = self._query('SELECT * FROM courses WHERE id = ?', (course_id,))
        return self._row_to_course(rows[0]) if rows else None

    def _row_to_course(self, row: sqlite3.Row) -> Course:
        """Convert a database row to a Course object."""
        return Course(
            id=row['id'],
            title=row['title'],
            description=row['description'] or "",
            short_description=row['short_description'] or "",
            status=CourseStatus(row['status']),
            author_id=row['author_id'] or "",
            cover_image=row['cover_image'],
            category=row['category'],
            tags=json.loads(row['tags']) if row['tags'] else [],
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at']),
        )

    # ==================== MODULE OPERATIONS ====================

    def save_module(self, module: CourseModule) -> str:
        """Save or update a module and return its ID."""
        module.id = module.id or _new_id()
        logger.debug(f"Saving module: {module.id} (course={module.course_id})")
        with self.transaction():
            self.conn.execute('''
                INSERT INTO modules (id, course_id, title, description, order_index)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title=excluded.title,
                    description=excluded.description,
                    order_index=excluded.order_index
            ''', (module.id, module.course_id, module.title, module.description,
                  module.order_index))
        return module.id

    def get_modules(self, course_id: str) -> list[CourseModule]:
        """Get a course's modules in order, with lesson ids but no lessons."""
        rows = self._query(
            'SELECT * FROM modules WHERE course_id = ? ORDER BY order_index, id',
            (course_id,)
        )
        if not rows:
            return []

        module_ids = [row['id'] for row in rows]
        lesson_rows = self._query(
            f'SELECT id, module_id FROM lessons WHERE module_id IN ({_placeholders(module_ids)}) '
            'ORDER BY order_index, id',
            tuple(module_ids)
        )
        lesson_ids: dict[str, list[str]] = {mid: [] for mid in module_ids}
        for lesson_row in lesson_rows:
            lesson_ids[lesson_row['module_id']].append(lesson_row['id'])

        return [
            CourseModule(
                id=row['id'],
                course_id=row['course_id'],
                title=row['title'],
                description=row['description'] or "",
                order_index=row['order_index'],
                lesson_ids=tuple(lesson_ids[row['id']]),
            )
            for row in rows
        ]

    # ==================== LESSON OPERATIONS ====================

    def save_lesson(self, lesson: Lesson, content: Optional[dict] = None) -> str:
        """Save or update a lesson with its full content payload."""
        lesson.id = lesson.id or _new_id()
        payload = content if content is not None else lesson.content
        logger.debug(f"Saving lesson: {lesson.id} (module={lesson.module_id})")
        with self.transaction():
            self.conn.execute('''
                INSERT INTO lessons (id, module_id, title, type, order_index, content, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    module_id=excluded.module_id,
                    title=excluded.title,
                    type=excluded.type,
                    order_index=excluded.order_index,
                    content=excluded.content,
                    updated_at=CURRENT_TIMESTAMP
            ''', (lesson.id, lesson.module_id, lesson.title, lesson.type.value,
                  lesson.order_index, json.dumps(payload or {})))
        return lesson.id

    def delete_lesson(self, lesson_id: str) -> bool:
        """Delete a lesson. Completion records are left for clean-up."""
        logger.debug(f"Deleting lesson: {lesson_id}")
        with self.transaction():
            cursor = self.conn.execute('DELETE FROM lessons WHERE id = ?', (lesson_id,))
        return cursor.rowcount > 0

    def get_lessons_for_modules(self, module_ids: list[str]) -> dict[str, list[Lesson]]:
        """Batch-read lesson metadata (no content) for several modules.

        Every requested module id appears in the result, possibly with an
        empty list.
        """
        result: dict[str, list[Lesson]] = {mid: [] for mid in module_ids}
        if not module_ids:
            return result
        rows = self._query(f'''
            SELECT {_LESSON_META_COLUMNS}
            FROM lessons l JOIN modules m ON m.id = l.module_id
            WHERE l.module_id IN ({_placeholders(module_ids)})
            ORDER BY l.order_index, l.id
        ''', tuple(module_ids))
        for row in rows:
            result[row['module_id']].append(self._row_to_lesson(row))
        return result

    def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        """Get a lesson with its full content."""
        rows = self._query(f'''
            SELECT {_LESSON_META_COLUMNS}, l.content
            FROM lessons l JOIN modules m ON m.id = l.module_id
            WHERE l.id = ?
        ''', (lesson_id,))
        if not rows:
            return None
        lesson = self._row_to_lesson(rows[0])
        lesson.mark_loaded(json.loads(rows[0]['content'] or '{}'))
        return lesson

    def _row_to_lesson(self, row: sqlite3.Row) -> Lesson:
        """Convert a metadata row to a Lesson in NOT_LOADED state."""
        return Lesson(
            id=row['id'],
            module_id=row['module_id'],
            course_id=row['course_id'],
            title=row['title'],
            type=LessonType(row['type']),
            order_index=row['order_index'],
            created_at=_parse_ts(row['created_at']),
            updated_at=_parse_ts(row['updated_at']),
        )

    # ==================== ENROLLMENT OPERATIONS ====================

    def save_enrollment(self, enrollment: Enrollment) -> str:
        """Save or update an enrollment, keyed by (user_id, course_id)."""
        enrollment.id = enrollment.id or _new_id()
        with self.transaction():
            self.conn.execute('''
                INSERT INTO enrollments (id, user_id, course_id, progress, status)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, course_id) DO UPDATE SET
                    status=excluded.status
            ''', (enrollment.id, enrollment.user_id, enrollment.course_id,
                  enrollment.progress, enrollment.status.value))
        rows = self._query(
            'SELECT id FROM enrollments WHERE user_id = ? AND course_id = ?',
            (enrollment.user_id, enrollment.course_id)
        )
        enrollment.id = rows[0]['id']
        return enrollment.id

    def get_enrollment(self, course_id: str, user_id: str) -> Optional[Enrollment]:
        """Get a learner's enrollment in a course."""
        rows = self._query(
            'SELECT * FROM enrollments WHERE course_id = ? AND user_id = ?',
            (course_id, user_id)
        )
        if not rows:
            return None
        row = rows[0]
        return Enrollment(
            id=row['id'],
            user_id=row['user_id'],
            course_id=row['course_id'],
            progress=row['progress'],
            status=EnrollmentStatus(row['status']),
            enrolled_at=_parse_ts(row['enrolled_at']),
            last_accessed_at=_parse_ts(row['last_accessed_at']),
        )

    def _recompute_progress(self, user_id: str, course_id: str) -> None:
        """Recompute enrollment progress from completion records.

        Must be called inside a transaction.
        """
        total = self.conn.execute('''
            SELECT COUNT(*) FROM lessons l JOIN modules m ON m.id = l.module_id
            WHERE m.course_id = ?
        ''', (course_id,)).fetchone()[0]
        done = self.conn.execute('''
            SELECT COUNT(*) FROM lesson_completions c
            JOIN lessons l ON l.id = c.lesson_id
            WHERE c.course_id = ? AND c.user_id = ?
        ''', (course_id, user_id)).fetchone()[0]
        progress = math.floor(done * 100 / total + 0.5) if total else 0
        status = EnrollmentStatus.COMPLETED if total and done >= total else EnrollmentStatus.ACTIVE
        self.conn.execute('''
            UPDATE enrollments
            SET progress = ?, status = ?, last_accessed_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND course_id = ?
        ''', (progress, status.value, user_id, course_id))

    # ==================== COMPLETION OPERATIONS ====================

    def upsert_completion(self, record: CompletionRecord) -> CompletionRecord:
        """Insert or update the single record for (user_id, lesson_id)."""
        completed_at = record.completed_at or datetime.now(timezone.utc)
        logger.debug(f"Upserting completion: user={record.user_id}, lesson={record.lesson_id}")
        with self.transaction():
            self.conn.execute('''
                INSERT INTO lesson_completions (
                    id, user_id, lesson_id, course_id, enrollment_id,
                    completed_at, score, data
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, lesson_id) DO UPDATE SET
                    course_id=excluded.course_id,
                    enrollment_id=excluded.enrollment_id,
                    completed_at=excluded.completed_at,
                    score=excluded.score,
                    data=excluded.data
            ''', (
                record.id or _new_id(), record.user_id, record.lesson_id,
                record.course_id, record.enrollment_id, completed_at.isoformat(),
                record.score, json.dumps(record.data) if record.data is not None else None,
            ))
            self._recompute_progress(record.user_id, record.course_id)
        return self.get_completion(record.lesson_id, record.user_id)

    def delete_completion(self, lesson_id: str, user_id: str) -> bool:
        """Delete the record for (user_id, lesson_id).

        Returns:
            True if a record was deleted, False if none existed
        """
        logger.debug(f"Deleting completion: user={user_id}, lesson={lesson_id}")
        with self.transaction():
            rows = self.conn.execute(
                'SELECT course_id FROM lesson_completions WHERE lesson_id = ? AND user_id = ?',
                (lesson_id, user_id)
            ).fetchall()
            if not rows:
                return False
            self.conn.execute(
                'DELETE FROM lesson_completions WHERE lesson_id = ? AND user_id = ?',
                (lesson_id, user_id)
            )
            self._recompute_progress(user_id, rows[0]['course_id'])
        return True

    def get_completion(self, lesson_id: str, user_id: str) -> Optional[CompletionRecord]:
        """Get the completion record for (user_id, lesson_id)."""
        rows = self._query(
            'SELECT * FROM lesson_completions WHERE lesson_id = ? AND user_id = ?',
            (lesson_id, user_id)
        )
        return self._row_to_completion(rows[0]) if rows else None

    def get_completions(self, course_id: str, user_id: str) -> list[CompletionRecord]:
        """Get every completion record a learner has in a course."""
        rows = self._query(
            'SELECT * FROM lesson_completions WHERE course_id = ? AND user_id = ? '
            'ORDER BY completed_at',
            (course_id, user_id)
        )
        return [self._row_to_completion(row) for row in rows]

    def get_completion_map(self, course_id: str, user_id: str) -> dict[str, bool]:
        """Get ``{lesson_id: True}`` for every completed lesson in a course."""
        rows = self._query(
            'SELECT lesson_id FROM lesson_completions WHERE course_id = ? AND user_id = ?',
            (course_id, user_id)
        )
        return {row['lesson_id']: True for row in rows}

    def delete_orphaned_completions(self, course_id: str, user_id: str) -> int:
        """Delete records whose lesson no longer belongs to the course.

        Returns:
            Number of records removed
        """
        with self.transaction():
            cursor = self.conn.execute('''
                DELETE FROM lesson_completions
                WHERE course_id = ? AND user_id = ? AND lesson_id NOT IN (
                    SELECT l.id FROM lessons l JOIN modules m ON m.id = l.module_id
                    WHERE m.course_id = ?
                )
            ''', (course_id, user_id, course_id))
            removed = cursor.rowcount
            if removed:
                self._recompute_progress(user_id, course_id)
        if removed:
            logger.info(f"Removed {removed} orphaned completion(s) in course {course_id}")
        return removed

    def _row_to_completion(self, row: sqlite3.Row) -> CompletionRecord:
        """Convert a database row to a CompletionRecord."""
        return CompletionRecord(
            id=row['id'],
            user_id=row['user_id'],
            lesson_id=row['lesson_id'],
            course_id=row['course_id'],
            enrollment_id=row['enrollment_id'],
            completed_at=_parse_ts(row['completed_at']),
            score=row['score'],
            data=json.loads(row['data']) if row['data'] else None,
        )

    # ==================== IMPORT ====================

    def import_course(self, data: dict[str, Any]) -> str:
        """Import a nested course document (course -> modules -> lessons).

        Expected shape::

            {"id": "...", "title": "...", "status": "published",
             "modules": [{"id": "...", "title": "...",
                          "lessons": [{"id": "...", "title": "...",
                                       "type": "quiz", "content": {...}}]}],
             "enrollments": [{"user_id": "..."}]}

        Returns:
            The course ID
        """
        course = Course(
            id=str(data.get('id') or ''),
            title=data['title'],
            description=data.get('description', ''),
            short_description=data.get('short_description', ''),
            status=CourseStatus(data.get('status', CourseStatus.DRAFT.value)),
            author_id=str(data.get('author_id', '')),
            cover_image=data.get('cover_image'),
            category=data.get('category'),
            tags=list(data.get('tags', [])),
        )
        course_id = self.save_course(course)

        for m_index, module_data in enumerate(data.get('modules', [])):
            module_id = self.save_module(CourseModule(
                id=str(module_data.get('id') or ''),
                course_id=course_id,
                title=module_data['title'],
                description=module_data.get('description', ''),
                order_index=module_data.get('order_index', m_index),
            ))
            for l_index, lesson_data in enumerate(module_data.get('lessons', [])):
                self.save_lesson(Lesson(
                    id=str(lesson_data.get('id') or ''),
                    module_id=module_id,
                    title=lesson_data['title'],
                    type=LessonType(lesson_data.get('type', LessonType.TEXT.value)),
                    order_index=lesson_data.get('order_index', l_index),
                ), content=lesson_data.get('content', {}))

        for enrollment_data in data.get('enrollments', []):
            self.save_enrollment(Enrollment(
                id=str(enrollment_data.get('id') or ''),
                user_id=str(enrollment_data['user_id']),
                course_id=course_id,
            ))

        logger.info(f"Imported course {course_id} ({len(data.get('modules', []))} modules)")
        return course_id
