import os
import sqlite3
import tempfile
import threading
import unittest
from datetime import timezone
from unittest.mock import patch

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, OperationalError

from voiceqa.db import SqlDbClient, integrity_failure, normalize_database_url
from voiceqa.errors import (
    AlreadyAnswered,
    ForeignKeyViolation,
    InvalidInput,
    PersistenceFailure,
    StoreUnavailable,
)


class SqlDbClientTests(unittest.TestCase):
    """
    Runs the SQLAlchemy client against in-memory SQLite with foreign keys enforced.
    """

    def setUp(self):
        self.db = SqlDbClient("sqlite+pysqlite:///:memory:")
        self.addCleanup(self.db.close)

    def test_create_and_list_questions(self):
        first = self.db.create_question("Favorite color?")
        second = self.db.create_question("Favorite food?")
        self.assertFalse(first.answered)
        self.assertLess(first.id, second.id)

        questions = self.db.list_questions()
        self.assertEqual([q.id for q in questions], [first.id, second.id])
        matching = [q for q in questions if q.text == "Favorite color?"]
        self.assertEqual(len(matching), 1)
        self.assertFalse(matching[0].answered)

    def test_create_question_rejects_empty_text(self):
        for text in ("", None, "  "):
            with self.assertRaises(InvalidInput):
                self.db.create_question(text)
        self.assertEqual(self.db.list_questions(), [])

    def test_record_response_marks_answered(self):
        question = self.db.create_question("Where?")
        record = self.db.record_response(question.id, "https://cdn.test/a.webm")
        self.assertEqual(record.question_id, question.id)
        self.assertEqual(record.audio_url, "https://cdn.test/a.webm")
        self.assertIsNotNone(record.created_at)

        self.assertTrue(self.db.get_question(question.id).answered)
        responses = self.db.list_responses(question.id)
        self.assertEqual(len(responses), 1)
        self.assertEqual(responses[0][0], "https://cdn.test/a.webm")

    def test_record_response_unknown_question(self):
        with self.assertRaises(ForeignKeyViolation):
            self.db.record_response(404, "https://cdn.test/orphan.webm")
        self.assertEqual(self.db.list_responses(404), [])

    def test_failed_insert_rolls_back_answered_flag(self):
        question = self.db.create_question("Atomic?")

        def fail_on_insert(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("INSERT INTO RESPONSES"):
                raise OperationalError(statement, parameters, Exception("disk I/O error"))

        event.listen(self.db.engine, "before_cursor_execute", fail_on_insert)
        try:
            with self.assertRaises(PersistenceFailure):
                self.db.record_response(question.id, "https://cdn.test/a.webm")
        finally:
            event.remove(self.db.engine, "before_cursor_execute", fail_on_insert)

        self.assertEqual(self.db.list_responses(question.id), [])
        self.assertFalse(self.db.get_question(question.id).answered)

    def test_reanswer_policy(self):
        question = self.db.create_question("Once?")
        self.db.record_response(question.id, "https://cdn.test/1.webm")
        with self.assertRaises(AlreadyAnswered):
            self.db.record_response(
                question.id, "https://cdn.test/2.webm", allow_reanswer=False
            )
        self.db.record_response(question.id, "https://cdn.test/3.webm")
        urls = [url for url, _ in self.db.list_responses(question.id)]
        self.assertEqual(urls, ["https://cdn.test/1.webm", "https://cdn.test/3.webm"])

    def test_list_responses_ordered_by_creation(self):
        question = self.db.create_question("Order?")
        for i in range(3):
            self.db.record_response(question.id, f"https://cdn.test/{i}.webm")
        rows = self.db.list_responses(question.id)
        self.assertEqual([url for url, _ in rows], [f"https://cdn.test/{i}.webm" for i in range(3)])
        created = [created_at for _, created_at in rows]
        self.assertEqual(created, sorted(created))

    def test_list_responses_unknown_question_is_empty(self):
        self.assertEqual(self.db.list_responses(12345), [])

    def test_response_timestamps_are_utc(self):
        question = self.db.create_question("When?")
        record = self.db.record_response(question.id, "https://cdn.test/a.webm")
        self.assertEqual(record.created_at.tzinfo, timezone.utc)
        [(_, listed_at)] = self.db.list_responses(question.id)
        self.assertEqual(listed_at.utcoffset().total_seconds(), 0)
        self.assertEqual(listed_at, record.created_at)

    def test_integrity_error_other_than_foreign_key(self):
        question = self.db.create_question("Null url?")
        with self.assertRaises(PersistenceFailure) as ctx:
            self.db.record_response(question.id, None)
        self.assertNotIsInstance(ctx.exception, ForeignKeyViolation)
        self.assertFalse(self.db.get_question(question.id).answered)
        self.assertEqual(self.db.list_responses(question.id), [])

    def test_integrity_failure_classification(self):
        fk = IntegrityError(
            "INSERT", {}, sqlite3.IntegrityError("FOREIGN KEY constraint failed")
        )
        not_null = IntegrityError(
            "INSERT", {}, sqlite3.IntegrityError("NOT NULL constraint failed: responses.audio_url")
        )
        self.assertIsInstance(integrity_failure(fk, 1), ForeignKeyViolation)
        failure = integrity_failure(not_null, 1)
        self.assertIsInstance(failure, PersistenceFailure)
        self.assertNotIsInstance(failure, ForeignKeyViolation)

    def test_reanswer_policy_unknown_question(self):
        with self.assertRaises(ForeignKeyViolation):
            self.db.record_response(
                404, "https://cdn.test/a.webm", allow_reanswer=False
            )

    def test_connection_error_is_store_unavailable(self):
        error = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(self.db, "Session", side_effect=error):
            with self.assertRaises(StoreUnavailable):
                self.db.list_questions()


class SqlDbClientFileTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.path = os.path.join(self.tmpdir.name, "nested", "db.sqlite")
        self.db = SqlDbClient(f"sqlite:///{self.path}")
        self.addCleanup(self.db.close)

    def test_creates_database_directory(self):
        self.assertTrue(os.path.exists(self.path))

    def test_concurrent_responses_for_same_question(self):
        question = self.db.create_question("Race?")
        errors = []

        def submit(i):
            try:
                self.db.record_response(question.id, f"https://cdn.test/{i}.webm")
            except Exception as exc:  # surfaced through the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        urls = {url for url, _ in self.db.list_responses(question.id)}
        self.assertEqual(urls, {"https://cdn.test/0.webm", "https://cdn.test/1.webm"})
        self.assertTrue(self.db.get_question(question.id).answered)

    def test_concurrent_first_answers_with_reanswer_disabled(self):
        question = self.db.create_question("First only?")
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def submit(i):
            barrier.wait()
            try:
                self.db.record_response(
                    question.id, f"https://cdn.test/{i}.webm", allow_reanswer=False
                )
                result = "recorded"
            except AlreadyAnswered:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["recorded", "rejected", "rejected", "rejected"])
        self.assertEqual(len(self.db.list_responses(question.id)), 1)
        self.assertTrue(self.db.get_question(question.id).answered)


class NormalizeDatabaseUrlTests(unittest.TestCase):
    def test_rewrites_heroku_scheme(self):
        self.assertEqual(
            normalize_database_url("postgres://u:p@host:5432/db"),
            "postgresql://u:p@host:5432/db",
        )

    def test_leaves_other_urls(self):
        self.assertEqual(normalize_database_url("sqlite:///db/db.sqlite"), "sqlite:///db/db.sqlite")


if __name__ == "__main__":
    unittest.main()
