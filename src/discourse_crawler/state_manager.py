"""
Crawl state persistence using SQLAlchemy.

This module stores every entity the crawler observes (forum, categories,
listing pages, topics, posts) in an embedded SQLite database so that a
later run resumes exactly where the previous one stopped.

Key properties:
- ACID writes: a killed run never leaves a half-written row
- Natural-key uniqueness per entity, enforced by the schema
- Atomic insert-or-return-existing for every create operation, so
  discovering the same entity twice is a no-op
- Raw JSON snapshots kept as text for audit/debugging
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    create_engine, event, func, select, text, update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import PersistenceError
from .models import PostSnapshot
from .utils import dump_json, load_json

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "discourse.db"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models using modern declarative style."""
    pass


class Forum(Base):
    """
    Root crawl target, one row per base URL.

    Attributes:
        id: Surrogate key
        url: Normalised forum base URL (natural key)
        categories_crawled: True once the categories listing was stored
    """
    __tablename__ = "forum"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    categories_crawled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"Forum(id={self.id!r}, url={self.url!r}, categories_crawled={self.categories_crawled})"


class Category(Base):
    """A category of a forum, keyed by (forum_id, remote_id)."""
    __tablename__ = "category"
    __table_args__ = (UniqueConstraint("forum_id", "remote_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    remote_id: Mapped[int] = mapped_column(Integer, nullable=False)
    forum_id: Mapped[int] = mapped_column(ForeignKey("forum.id"), nullable=False)
    topic_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    json: Mapped[str] = mapped_column(Text, nullable=False)
    pages_crawled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return (
            f"Category(id={self.id!r}, remote_id={self.remote_id!r}, "
            f"pages_crawled={self.pages_crawled})"
        )


class Page(Base):
    """One fetched listing page of a category, keyed by (category_id, page_number)."""
    __tablename__ = "page"
    __table_args__ = (UniqueConstraint("category_id", "page_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("category.id"), nullable=False)
    more_topics_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    json: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return (
            f"Page(category_id={self.category_id!r}, page_number={self.page_number!r}, "
            f"more_topics_url={self.more_topics_url!r})"
        )


class Topic(Base):
    """
    A discussion thread, keyed by (category_id, remote_id).

    Attributes:
        page_excerpt_json: Topic entry as it appeared in the listing page
        topic_json: Full topic document, None until the topic is fetched
        posts_crawled: True once every post of the topic was reconciled
        created_at: Remote creation time from the listing excerpt
        last_crawled_at: When posts were last collected (naive UTC)
    """
    __tablename__ = "topic"
    __table_args__ = (UniqueConstraint("category_id", "remote_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    remote_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("category.id"), nullable=False)
    page_excerpt_json: Mapped[str] = mapped_column(Text, nullable=False)
    topic_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    posts_crawled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_crawled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"Topic(id={self.id!r}, remote_id={self.remote_id!r}, "
            f"posts_crawled={self.posts_crawled}, last_crawled_at={self.last_crawled_at})"
        )


class Post(Base):
    """One message of a topic, keyed by (topic_id, remote_id). Its JSON is updated on edits."""
    __tablename__ = "post"
    __table_args__ = (UniqueConstraint("topic_id", "remote_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    remote_id: Mapped[int] = mapped_column(Integer, nullable=False)
    topic_id: Mapped[int] = mapped_column(ForeignKey("topic.id"), nullable=False)
    json: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"Post(id={self.id!r}, remote_id={self.remote_id!r}, topic_id={self.topic_id!r})"


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class CrawlStore:
    """
    Keyed store for crawl state.

    This class provides a clean interface over the crawl database,
    abstracting away SQLAlchemy details from the crawl engine. Rows are
    returned as detached ORM objects; mutate them through the ``update_*``
    methods, never directly.

    Usage:
        store = CrawlStore("discourse.db")
        forum = store.create_forum(url)  # returns the stored row if it exists
        category = store.create_category(forum.id, 4, "/t/about/1", {...})
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """
        Initialize the store and database.

        Creates the database file and tables if they don't exist. The
        special path ``":memory:"`` gives a private in-memory database.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = str(db_path)

        if self.db_path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(f"sqlite:///{Path(self.db_path)}", echo=False)
        event.listen(self.engine, "connect", _enable_foreign_keys)

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not initialize crawl store {self.db_path}: {e}") from e

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

        logger.info("Crawl store initialized: %s", self.db_path)

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        """Run one unit of work; commit on success, roll back and wrap on failure."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Could not %s: %s", action, e)
            raise PersistenceError(f"Could not {action}: {e}", details={'action': action}) from e
        finally:
            session.close()

    @staticmethod
    def _insert_or_get(session: Session, model, keys: Dict[str, Any], values: Dict[str, Any]):
        """Insert a row unless its natural key exists, then return the stored row."""
        stmt = (
            sqlite_insert(model)
            .values(**keys, **values)
            .on_conflict_do_nothing(index_elements=list(keys))
        )
        session.execute(stmt)
        return session.execute(select(model).filter_by(**keys)).scalar_one()

    @staticmethod
    def _update(session: Session, model, row_id: int, fields: Dict[str, Any]):
        if not fields:
            return
        session.execute(update(model).where(model.id == row_id).values(**fields))

    # -------------------------------------------------------
    # FORUM
    # -------------------------------------------------------

    def find_forum(self, url: str) -> Optional[Forum]:
        with self._session("find forum") as session:
            return session.execute(select(Forum).filter_by(url=url)).scalar_one_or_none()

    def create_forum(self, url: str, categories_crawled: bool = False) -> Forum:
        with self._session("create forum") as session:
            return self._insert_or_get(
                session, Forum, {'url': url}, {'categories_crawled': categories_crawled}
            )

    def update_forum(self, forum_id: int, **fields) -> None:
        with self._session("update forum") as session:
            self._update(session, Forum, forum_id, fields)

    def get_forum(self, forum_id: int) -> Optional[Forum]:
        with self._session("get forum") as session:
            return session.get(Forum, forum_id)

    # -------------------------------------------------------
    # CATEGORY
    # -------------------------------------------------------

    def find_categories_by_forum(self, forum_id: int) -> List[Category]:
        """All categories of a forum, in insertion order."""
        with self._session("list categories") as session:
            stmt = select(Category).filter_by(forum_id=forum_id).order_by(Category.id)
            return list(session.execute(stmt).scalars())

    def find_category(self, forum_id: int, remote_id: int) -> Optional[Category]:
        with self._session("find category") as session:
            stmt = select(Category).filter_by(forum_id=forum_id, remote_id=remote_id)
            return session.execute(stmt).scalar_one_or_none()

    def create_category(
        self,
        forum_id: int,
        remote_id: int,
        topic_url: Optional[str],
        data: Any,
        pages_crawled: bool = False,
    ) -> Category:
        with self._session("create category") as session:
            return self._insert_or_get(
                session,
                Category,
                {'forum_id': forum_id, 'remote_id': remote_id},
                {'topic_url': topic_url, 'json': dump_json(data), 'pages_crawled': pages_crawled},
            )

    def update_category(self, category_id: int, **fields) -> None:
        with self._session("update category") as session:
            self._update(session, Category, category_id, fields)

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._session("get category") as session:
            return session.get(Category, category_id)

    # -------------------------------------------------------
    # PAGE
    # -------------------------------------------------------

    def get_last_page(self, category_id: int) -> Optional[Page]:
        """The stored page with the highest page number, or None."""
        with self._session("get last page") as session:
            stmt = (
                select(Page)
                .filter_by(category_id=category_id)
                .order_by(Page.page_number.desc())
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none()

    def create_page(
        self,
        category_id: int,
        page_number: int,
        more_topics_url: Optional[str],
        data: Any,
    ) -> Page:
        with self._session("create page") as session:
            return self._insert_or_get(
                session,
                Page,
                {'category_id': category_id, 'page_number': page_number},
                {'more_topics_url': more_topics_url, 'json': dump_json(data)},
            )

    def upsert_page(
        self,
        category_id: int,
        page_number: int,
        more_topics_url: Optional[str],
        data: Any,
    ) -> Page:
        """Insert a page or replace the snapshot and cursor of the stored one."""
        values = {'more_topics_url': more_topics_url, 'json': dump_json(data)}
        with self._session("upsert page") as session:
            stmt = (
                sqlite_insert(Page)
                .values(category_id=category_id, page_number=page_number, **values)
                .on_conflict_do_update(index_elements=['category_id', 'page_number'], set_=values)
            )
            session.execute(stmt)
            stmt = select(Page).filter_by(category_id=category_id, page_number=page_number)
            return session.execute(stmt).scalar_one()

    def count_pages(self, category_id: int) -> int:
        with self._session("count pages") as session:
            stmt = select(func.count(Page.id)).filter_by(category_id=category_id)
            return session.execute(stmt).scalar_one()

    # -------------------------------------------------------
    # TOPIC
    # -------------------------------------------------------

    def find_topic(self, category_id: int, remote_id: int) -> Optional[Topic]:
        with self._session("find topic") as session:
            stmt = select(Topic).filter_by(category_id=category_id, remote_id=remote_id)
            return session.execute(stmt).scalar_one_or_none()

    def create_topic(
        self,
        category_id: int,
        remote_id: int,
        excerpt: Any,
        created_at: Optional[datetime] = None,
    ) -> Topic:
        with self._session("create topic") as session:
            return self._insert_or_get(
                session,
                Topic,
                {'category_id': category_id, 'remote_id': remote_id},
                {
                    'page_excerpt_json': dump_json(excerpt),
                    'topic_json': None,
                    'posts_crawled': False,
                    'created_at': created_at,
                },
            )

    def update_topic(self, topic_id: int, **fields) -> None:
        """
        Update topic columns. ``topic_json`` may be given as a document and
        is serialised here.
        """
        if 'topic_json' in fields and fields['topic_json'] is not None \
                and not isinstance(fields['topic_json'], str):
            fields['topic_json'] = dump_json(fields['topic_json'])
        with self._session("update topic") as session:
            self._update(session, Topic, topic_id, fields)

    def get_topic(self, topic_id: int) -> Optional[Topic]:
        with self._session("get topic") as session:
            return session.get(Topic, topic_id)

    def get_topics_by_category(self, category_id: int) -> List[Topic]:
        """Topics of a category, newest remote topic id first."""
        with self._session("list topics") as session:
            stmt = (
                select(Topic)
                .filter_by(category_id=category_id)
                .order_by(Topic.remote_id.desc())
            )
            return list(session.execute(stmt).scalars())

    def count_topics(self, category_id: int) -> int:
        with self._session("count topics") as session:
            stmt = select(func.count(Topic.id)).filter_by(category_id=category_id)
            return session.execute(stmt).scalar_one()

    def get_latest_topic_timestamp(self, forum_id: int,
                                   category_id: Optional[int] = None) -> Optional[datetime]:
        """
        Most recent remote creation time among the forum's stored topics,
        optionally narrowed to one category.
        """
        with self._session("get latest topic timestamp") as session:
            stmt = (
                select(func.max(Topic.created_at))
                .join(Category, Topic.category_id == Category.id)
                .where(Category.forum_id == forum_id)
            )
            if category_id is not None:
                stmt = stmt.where(Topic.category_id == category_id)
            return session.execute(stmt).scalar_one_or_none()

    # -------------------------------------------------------
    # POST
    # -------------------------------------------------------

    def find_post(self, topic_id: int, remote_id: int) -> Optional[Post]:
        with self._session("find post") as session:
            stmt = select(Post).filter_by(topic_id=topic_id, remote_id=remote_id)
            return session.execute(stmt).scalar_one_or_none()

    def create_post(self, topic_id: int, remote_id: int, data: Any) -> Post:
        with self._session("create post") as session:
            return self._insert_or_get(
                session,
                Post,
                {'topic_id': topic_id, 'remote_id': remote_id},
                {'json': dump_json(data)},
            )

    def update_post_if_newer(self, post_id: int, data: Any) -> bool:
        """
        Replace a stored post's snapshot when ``data`` is a newer edit.

        Returns:
            True if the stored snapshot was replaced
        """
        incoming = PostSnapshot.from_json(data)
        with self._session("update post") as session:
            post = session.get(Post, post_id)
            if post is None:
                return False
            stored = PostSnapshot.from_json(load_json(post.json) or {})
            if not incoming.is_newer_than(stored):
                return False
            post.json = dump_json(data)
            return True

    def count_posts(self, topic_id: Optional[int] = None) -> int:
        with self._session("count posts") as session:
            stmt = select(func.count(Post.id))
            if topic_id is not None:
                stmt = stmt.filter_by(topic_id=topic_id)
            return session.execute(stmt).scalar_one()

    # -------------------------------------------------------
    # BULK / ESCAPE HATCH
    # -------------------------------------------------------

    def reset_crawled_state(self, forum_id: int) -> None:
        """
        Clear every "crawled" flag under one forum in a single transaction.

        Either the forum, all its categories and all their topics are reset
        together, or nothing changes. Other forums are untouched.
        """
        with self._session("reset crawled state") as session:
            session.execute(
                update(Forum).where(Forum.id == forum_id).values(categories_crawled=False)
            )
            session.execute(
                update(Category).where(Category.forum_id == forum_id).values(pages_crawled=False)
            )
            category_ids = select(Category.id).where(Category.forum_id == forum_id)
            session.execute(
                update(Topic)
                .where(Topic.category_id.in_(category_ids))
                .values(posts_crawled=False, last_crawled_at=None)
            )

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a parameterised SQL statement and return rows as dictionaries.

        Example:
            store.query("SELECT count(*) AS n FROM post WHERE topic_id = :tid", {"tid": 3})
        """
        with self._session("run query") as session:
            result = session.execute(text(sql), params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings()]

    def close(self) -> None:
        self.engine.dispose()
