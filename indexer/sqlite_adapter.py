"""SQLite database adapter for contextdocs.

Holds the documentation corpus (with an FTS5 index that doubles as the
search oracle), the context activity log, the searchable context index
and the suggestion log with its feedback.

sqlite3 is blocking, so every statement batch runs on the default
executor behind a thread lock that keeps transactions on the shared
connection from interleaving.
"""

import asyncio
import functools
import sqlite3
import logging
import json
import threading
import uuid
from typing import List, Dict, Any, Optional, Callable

from indexer.oracle import SearchHit
from services.shared.errors import OracleUnavailableError, StoreError
from services.shared.models import ContextEvent, DocumentationEntry, FeedbackVerdict, Suggestion

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documentation (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    keywords TEXT NOT NULL DEFAULT '[]',
    category TEXT,
    priority INTEGER NOT NULL DEFAULT 5,
    source TEXT NOT NULL,
    source_url TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE VIRTUAL TABLE IF NOT EXISTS documentation_fts USING fts5(
    doc_id UNINDEXED, title, content, keywords,
    tokenize = 'porter unicode61'
);

CREATE TABLE IF NOT EXISTS context_activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    activity_type TEXT NOT NULL,
    activity_data TEXT NOT NULL,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_context_activities_subject ON context_activities(subject_id, timestamp);

CREATE VIRTUAL TABLE IF NOT EXISTS context_fts USING fts5(
    activity_id UNINDEXED, subject_id UNINDEXED, activity_type UNINDEXED,
    commands, files, processes, logs,
    tokenize = 'porter unicode61'
);

CREATE TABLE IF NOT EXISTS suggestions (
    id TEXT PRIMARY KEY,
    subject_id TEXT,
    documentation_id TEXT,
    rule_id TEXT,
    suggestion_type TEXT NOT NULL,
    title TEXT,
    category TEXT,
    context_data TEXT,
    relevance_score REAL NOT NULL,
    matched_keywords TEXT NOT NULL DEFAULT '[]',
    feedback TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_suggestions_subject ON suggestions(subject_id, created_at);
CREATE INDEX IF NOT EXISTS idx_suggestions_created ON suggestions(created_at);
"""

SQL_TIMESTAMP = "%Y-%m-%d %H:%M:%S"

# Columns a partial documentation update may touch
UPDATABLE_FIELDS = ('title', 'content', 'tags', 'keywords', 'category', 'priority', 'source_url')
JSON_FIELDS = ('tags', 'keywords')


def fts_query(text: str) -> str:
    """Quote each term and OR them so arbitrary input is valid FTS5 syntax."""
    terms = [term.replace('"', '""') for term in text.split()]
    return " OR ".join(f'"{term}"' for term in terms if term)


class SQLiteAdapter:
    """SQLite store and search oracle with an async interface."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        try:
            await asyncio.get_event_loop().run_in_executor(None, self._connect)
            logger.info(f"SQLite adapter initialized: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise StoreError(f"Failed to initialize SQLite: {e}") from e

    def _connect(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        conn.commit()
        self.conn = conn

    async def close(self):
        """Close SQLite connection."""
        if self.conn:
            await self._run(lambda cursor: self.conn.close())
            self.conn = None
            logger.info("SQLite connection closed")

    def _cursor(self) -> sqlite3.Cursor:
        if self.conn is None:
            raise StoreError("SQLite adapter not initialized. Call initialize() first.")
        return self.conn.cursor()

    async def _run(self, work: Callable[..., Any], *args, commit: bool = False) -> Any:
        """Run ``work(cursor, *args)`` on the executor; commit or roll back when writing."""
        return await asyncio.get_event_loop().run_in_executor(
            None, functools.partial(self._locked, work, args, commit)
        )

    def _locked(self, work: Callable[..., Any], args: tuple, commit: bool) -> Any:
        with self._lock:
            cursor = self._cursor()
            try:
                result = work(cursor, *args)
                if commit:
                    self.conn.commit()
                return result
            except sqlite3.Error:
                if commit:
                    self.conn.rollback()
                raise

    # Documentation corpus

    async def upsert_documentation(self, entry: DocumentationEntry) -> Dict[str, Any]:
        """Insert or replace a documentation entry and re-index it."""
        doc_id = entry.id or str(uuid.uuid4())

        def write(cursor):
            cursor.execute(
                """
                INSERT INTO documentation (id, title, content, tags, keywords, category,
                                           priority, source, source_url)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title, content = excluded.content,
                    tags = excluded.tags, keywords = excluded.keywords,
                    category = excluded.category, priority = excluded.priority,
                    source = excluded.source, source_url = excluded.source_url,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (doc_id, entry.title, entry.content, json.dumps(entry.tags),
                 json.dumps(entry.keywords), entry.category, entry.priority,
                 entry.source, entry.source_url)
            )
            self._reindex(cursor, doc_id, entry.title, entry.content, entry.keywords)

        try:
            await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to store documentation {doc_id}: {e}") from e

        return await self.get_documentation(doc_id)

    async def update_documentation(self, doc_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update and re-index; None when the id is unknown."""
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}

        def write(cursor):
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                values = [json.dumps(v) if name in JSON_FIELDS else v for name, v in fields.items()]
                cursor.execute(
                    f"UPDATE documentation SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    values + [doc_id]
                )
            cursor.execute("SELECT * FROM documentation WHERE id = ?", (doc_id,))
            row = cursor.fetchone()
            if row is not None and fields:
                self._reindex(cursor, doc_id, row['title'], row['content'], json.loads(row['keywords']))
            return row

        try:
            row = await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update documentation {doc_id}: {e}") from e

        if row is None:
            return None
        logger.info(f"Documentation {doc_id} updated: {', '.join(fields) or 'no changes'}")
        return self._documentation_row(row)

    @staticmethod
    def _reindex(cursor: sqlite3.Cursor, doc_id: str, title: str, content: str, keywords: List[str]):
        cursor.execute("DELETE FROM documentation_fts WHERE doc_id = ?", (doc_id,))
        cursor.execute(
            "INSERT INTO documentation_fts (doc_id, title, content, keywords) VALUES (?, ?, ?, ?)",
            (doc_id, title, content, " ".join(keywords))
        )

    async def get_documentation(self, doc_id: str) -> Optional[Dict[str, Any]]:
        def fetch(cursor):
            cursor.execute("SELECT * FROM documentation WHERE id = ?", (doc_id,))
            return cursor.fetchone()

        try:
            row = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to fetch documentation {doc_id}: {e}") from e
        return self._documentation_row(row) if row else None

    async def list_documentation(self, limit: int = 50, offset: int = 0,
                                 category: Optional[str] = None,
                                 source: Optional[str] = None,
                                 search: Optional[str] = None) -> List[Dict[str, Any]]:
        """Browse the corpus, highest priority and newest first."""
        conditions = ["1=1"]
        params: List[Any] = []
        if category:
            conditions.append("category = ?")
            params.append(category)
        if source:
            conditions.append("source = ?")
            params.append(source)
        if search:
            # LIKE is case-insensitive for ASCII in SQLite
            conditions.append("(title LIKE ? OR content LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])

        def fetch(cursor):
            cursor.execute(
                f"""
                SELECT * FROM documentation
                WHERE {' AND '.join(conditions)}
                ORDER BY priority DESC, created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset]
            )
            return cursor.fetchall()

        try:
            rows = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list documentation: {e}") from e
        return [self._documentation_row(row) for row in rows]

    async def documentation_categories(self) -> List[Dict[str, Any]]:
        return await self._grouped_counts("category", "WHERE category IS NOT NULL")

    async def documentation_sources(self) -> List[Dict[str, Any]]:
        return await self._grouped_counts("source")

    async def _grouped_counts(self, column: str, where: str = "") -> List[Dict[str, Any]]:
        def fetch(cursor):
            cursor.execute(
                f"""
                SELECT {column}, COUNT(*) AS count
                FROM documentation {where}
                GROUP BY {column}
                ORDER BY count DESC, {column}
                """
            )
            return [dict(row) for row in cursor.fetchall()]

        try:
            return await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to count documentation by {column}: {e}") from e

    async def delete_documentation(self, doc_id: str) -> bool:
        def write(cursor):
            cursor.execute("DELETE FROM documentation WHERE id = ?", (doc_id,))
            deleted = cursor.rowcount > 0
            cursor.execute("DELETE FROM documentation_fts WHERE doc_id = ?", (doc_id,))
            return deleted

        try:
            return await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete documentation {doc_id}: {e}") from e

    async def search(self, query_terms: str, limit: int = 10) -> List[SearchHit]:
        """Search-oracle entry point: bm25 over title, content and keywords."""
        match = fts_query(query_terms or "")
        if not match:
            return []

        def fetch(cursor):
            # Column weights mirror title^2, content, keywords^3
            cursor.execute(
                """
                SELECT d.*, -bm25(documentation_fts, 0.0, 2.0, 1.0, 3.0) AS score
                FROM documentation_fts
                JOIN documentation d ON d.id = documentation_fts.doc_id
                WHERE documentation_fts MATCH ?
                ORDER BY score DESC, d.priority DESC
                LIMIT ?
                """,
                (match, limit)
            )
            return cursor.fetchall()

        try:
            rows = await self._run(fetch)
        except sqlite3.Error as e:
            raise OracleUnavailableError(f"Documentation search failed: {e}") from e

        return [
            SearchHit(
                id=row['id'],
                score=float(row['score']),
                title=row['title'],
                content=row['content'],
                tags=json.loads(row['tags']),
                keywords=json.loads(row['keywords']),
                category=row['category'],
                priority=row['priority'],
                source=row['source']
            )
            for row in rows
        ]

    async def search_documentation(self, query: str, limit: int = 20,
                                   category: Optional[str] = None,
                                   tags: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Search the corpus for display, with optional category/tag filters."""
        hits = await self.search(query, limit=limit * 2 if (category or tags) else limit)
        results = []
        for hit in hits:
            if category and hit.category != category:
                continue
            if tags and not set(tags) & set(hit.tags):
                continue
            results.append({
                'id': hit.id, 'title': hit.title, 'content': hit.content,
                'tags': hit.tags, 'keywords': hit.keywords, 'category': hit.category,
                'priority': hit.priority, 'source': hit.source, 'score': hit.score
            })
        return results[:limit]

    # Context activity

    async def record_activity(self, subject_id: str, event: ContextEvent) -> int:
        """Append an event to the activity log and return its id."""
        def write(cursor):
            cursor.execute(
                "INSERT INTO context_activities (subject_id, activity_type, activity_data) VALUES (?, ?, ?)",
                (subject_id, event.type, json.dumps(event.payload()))
            )
            return cursor.lastrowid

        try:
            return await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to record context activity: {e}") from e

    async def list_activity(self, subject_id: str, limit: int = 100, offset: int = 0,
                            activity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        conditions = ["subject_id = ?"]
        params: List[Any] = [subject_id]
        if activity_type:
            conditions.append("activity_type = ?")
            params.append(activity_type)

        def fetch(cursor):
            cursor.execute(
                f"""
                SELECT * FROM context_activities
                WHERE {' AND '.join(conditions)}
                ORDER BY timestamp DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset]
            )
            return cursor.fetchall()

        try:
            rows = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to fetch activity history: {e}") from e

        activities = []
        for row in rows:
            activity = dict(row)
            activity['activity_data'] = json.loads(activity['activity_data'])
            activities.append(activity)
        return activities

    async def index_context(self, subject_id: str, event: ContextEvent,
                            activity_id: Optional[int] = None):
        """Make an event searchable by its commands, files, processes and logs."""
        def write(cursor):
            cursor.execute(
                """
                INSERT INTO context_fts (activity_id, subject_id, activity_type,
                                         commands, files, processes, logs)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    activity_id, subject_id, event.type,
                    "\n".join(list(event.commands) + list(event.recent_commands)),
                    "\n".join(event.file_paths()),
                    "\n".join(p.command for p in event.processes if p.command),
                    "\n".join(e.message for e in event.entries if e.message)
                )
            )

        try:
            await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to index context: {e}") from e

    async def search_context(self, query: str, subject_id: Optional[str] = None,
                             activity_type: Optional[str] = None,
                             limit: int = 50) -> List[Dict[str, Any]]:
        match = fts_query(query)
        if not match:
            return []

        conditions = ["context_fts MATCH ?"]
        params: List[Any] = [match]
        if subject_id:
            conditions.append("context_fts.subject_id = ?")
            params.append(subject_id)
        if activity_type:
            conditions.append("context_fts.activity_type = ?")
            params.append(activity_type)

        def fetch(cursor):
            cursor.execute(
                f"""
                SELECT a.id, a.subject_id, a.activity_type, a.activity_data, a.timestamp
                FROM context_fts
                JOIN context_activities a ON a.id = context_fts.activity_id
                WHERE {' AND '.join(conditions)}
                ORDER BY a.timestamp DESC, a.id DESC
                LIMIT ?
                """,
                params + [limit]
            )
            return cursor.fetchall()

        try:
            rows = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Context search failed: {e}") from e

        results = []
        for row in rows:
            result = dict(row)
            result['activity_data'] = json.loads(result['activity_data'])
            results.append(result)
        return results

    async def activity_analytics(self, subject_id: str, days: int = 7) -> Dict[str, Any]:
        window = f"-{int(days)} days"

        def fetch(cursor):
            cursor.execute(
                """
                SELECT activity_type, COUNT(*) AS count, DATE(timestamp) AS date
                FROM context_activities
                WHERE subject_id = ? AND timestamp > datetime('now', ?)
                GROUP BY activity_type, DATE(timestamp)
                ORDER BY date DESC
                """,
                (subject_id, window)
            )
            timeline = [dict(row) for row in cursor.fetchall()]

            cursor.execute(
                """
                SELECT COUNT(*) AS total_activities,
                       COUNT(DISTINCT activity_type) AS unique_types,
                       MIN(timestamp) AS first_activity,
                       MAX(timestamp) AS last_activity
                FROM context_activities
                WHERE subject_id = ? AND timestamp > datetime('now', ?)
                """,
                (subject_id, window)
            )
            return {'summary': dict(cursor.fetchone()), 'timeline': timeline}

        try:
            return await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to compute activity analytics: {e}") from e

    # Suggestions and feedback

    async def record_suggestions(self, subject_id: Optional[str], event: ContextEvent,
                                 suggestions: List[Suggestion]):
        """Persist a ranked suggestion list in one transaction."""
        if not suggestions:
            return
        context_data = json.dumps(event.payload())
        rows = [
            (s.id, subject_id, s.documentation_id, s.rule_id, s.type.value,
             s.title, s.category, context_data, s.relevance_score,
             json.dumps(s.matched_keywords), s.created_at.strftime(SQL_TIMESTAMP))
            for s in suggestions
        ]

        def write(cursor):
            cursor.executemany(
                """
                INSERT OR REPLACE INTO suggestions (id, subject_id, documentation_id, rule_id,
                    suggestion_type, title, category, context_data, relevance_score,
                    matched_keywords, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows
            )

        try:
            await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to record suggestions: {e}") from e

    async def get_suggestion(self, suggestion_id: str) -> Optional[Dict[str, Any]]:
        def fetch(cursor):
            cursor.execute("SELECT * FROM suggestions WHERE id = ?", (suggestion_id,))
            return cursor.fetchone()

        try:
            row = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to fetch suggestion {suggestion_id}: {e}") from e
        return self._suggestion_row(row) if row else None

    async def update_feedback(self, suggestion_id: str, verdict: FeedbackVerdict) -> bool:
        """Set the feedback verdict; returns False when the id is unknown."""
        def write(cursor):
            cursor.execute(
                "UPDATE suggestions SET feedback = ?, status = ? WHERE id = ?",
                (verdict.value, 'reviewed', suggestion_id)
            )
            return cursor.rowcount > 0

        try:
            return await self._run(write, commit=True)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to record feedback for {suggestion_id}: {e}") from e

    async def suggestion_history(self, subject_id: str, limit: int = 50,
                                 offset: int = 0) -> List[Dict[str, Any]]:
        def fetch(cursor):
            cursor.execute(
                """
                SELECT s.*, d.source AS documentation_source
                FROM suggestions s
                LEFT JOIN documentation d ON s.documentation_id = d.id
                WHERE s.subject_id = ?
                ORDER BY s.created_at DESC
                LIMIT ? OFFSET ?
                """,
                (subject_id, limit, offset)
            )
            return cursor.fetchall()

        try:
            rows = await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to fetch suggestion history: {e}") from e
        return [self._suggestion_row(row) for row in rows]

    async def suggestion_analytics(self, days: int = 7) -> Dict[str, Any]:
        """Counts by feedback verdict and by category over a rolling window."""
        window = f"-{int(days)} days"

        def fetch(cursor):
            cursor.execute(
                """
                SELECT COUNT(*) AS total_suggestions,
                       AVG(relevance_score) AS avg_relevance,
                       COUNT(CASE WHEN feedback = 'helpful' THEN 1 END) AS helpful_count,
                       COUNT(CASE WHEN feedback = 'not_helpful' THEN 1 END) AS not_helpful_count,
                       COUNT(CASE WHEN feedback = 'irrelevant' THEN 1 END) AS irrelevant_count
                FROM suggestions
                WHERE created_at > datetime('now', ?)
                """,
                (window,)
            )
            overview = dict(cursor.fetchone())

            cursor.execute(
                """
                SELECT category, COUNT(*) AS suggestion_count
                FROM suggestions
                WHERE created_at > datetime('now', ?) AND category IS NOT NULL
                GROUP BY category
                ORDER BY suggestion_count DESC
                LIMIT 10
                """,
                (window,)
            )
            return {'overview': overview, 'top_categories': [dict(row) for row in cursor.fetchall()]}

        try:
            return await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to compute suggestion analytics: {e}") from e

    async def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics for monitoring."""
        def fetch(cursor):
            counts = {}
            for table in ('documentation', 'context_activities', 'suggestions'):
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                counts[f'{table}_count'] = cursor.fetchone()[0]
            cursor.execute(
                "SELECT COUNT(*) FROM suggestions WHERE feedback IS NOT NULL AND created_at >= datetime('now', '-1 day')"
            )
            counts['recent_feedback'] = cursor.fetchone()[0]
            return counts

        try:
            return await self._run(fetch)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read database stats: {e}") from e

    @staticmethod
    def _documentation_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data['tags'] = json.loads(data['tags'])
        data['keywords'] = json.loads(data['keywords'])
        return data

    @staticmethod
    def _suggestion_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data['matched_keywords'] = json.loads(data['matched_keywords'])
        if data.get('context_data'):
            data['context_data'] = json.loads(data['context_data'])
        return data
