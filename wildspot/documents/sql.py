from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Type
from uuid import uuid4

from sqlalchemy import Table, and_, delete, func, insert, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from wildspot.core.exceptions import DocumentStoreError
from wildspot.database import AsyncSessionLocal
from wildspot.documents.base import (
	SERVER_TIMESTAMP,
	Cursor,
	Direction,
	DocumentStore,
	Filter,
	Increment,
	Query,
	Snapshot,
)
from wildspot.models import Profile, Sighting

logger = logging.getLogger(__name__)

DEFAULT_COLLECTIONS = {
	"spots": Sighting,
	"users": Profile,
}


class SqlDocumentStore(DocumentStore):
	"""Document store over the SQLAlchemy tables behind each collection.

	Column names double as document field names. Every call runs in its own
	short transaction.
	"""

	def __init__(
			self,
			session_factory: async_sessionmaker = AsyncSessionLocal,
			collections: Optional[Dict[str, Type]] = None,
	):
		self._session_factory = session_factory
		self._tables: Dict[str, Table] = {
			name: model.__table__ for name, model in (collections or DEFAULT_COLLECTIONS).items()
		}

	# =====================================
	# Point operations
	# =====================================
	async def add(self, collection: str, data: Dict[str, Any]) -> str:
		table = self._table(collection)
		document_id = uuid4().hex
		values = self._insert_values(table, data)
		values["id"] = document_id

		async with self._transaction() as session:
			await session.execute(insert(table).values(**values))
		logger.debug(f"Added {collection}/{document_id}")
		return document_id

	async def get(self, collection: str, document_id: str) -> Optional[Snapshot]:
		table = self._table(collection)
		async with self._transaction() as session:
			result = await session.execute(select(table).where(table.c.id == document_id))
			row = result.first()
		return self._snapshot(row) if row is not None else None

	async def set(self, collection: str, document_id: str, data: Dict[str, Any], merge: bool = False) -> None:
		table = self._table(collection)

		async with self._transaction() as session:
			exists = await self._exists(session, table, document_id)
			if not exists:
				values = self._insert_values(table, data)
				values["id"] = document_id
				await session.execute(insert(table).values(**values))
				return

			values = self._update_values(table, data)
			if not merge:
				# Overwrite: fields not given are cleared
				for column in table.c:
					if column.name != "id" and column.name not in values:
						values[column.name] = None
			if values:
				await session.execute(update(table).where(table.c.id == document_id).values(**values))

	async def update(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
		table = self._table(collection)
		values = self._update_values(table, data)

		async with self._transaction() as session:
			result = await session.execute(update(table).where(table.c.id == document_id).values(**values))
			if result.rowcount == 0:
				raise DocumentStoreError(f"No document to update: {collection}/{document_id}")

	async def delete(self, collection: str, document_id: str) -> None:
		table = self._table(collection)
		async with self._transaction() as session:
			await session.execute(delete(table).where(table.c.id == document_id))

	# =====================================
	# Queries
	# =====================================
	async def run(self, query: Query) -> List[Snapshot]:
		table = self._table(query.collection)
		statement = self._select(table, query)

		async with self._transaction() as session:
			result = await session.execute(statement)
			rows = result.all()
		return [self._snapshot(row) for row in rows]

	async def count(self, query: Query) -> int:
		table = self._table(query.collection)
		statement = select(func.count()).select_from(self._select(table, query).subquery())

		async with self._transaction() as session:
			result = await session.execute(statement)
			return int(result.scalar_one())

	def _select(self, table: Table, query: Query):
		statement = select(table)
		for condition in query.filters:
			statement = statement.where(self._condition(table, condition))

		if query.order_field is not None:
			column = self._column(table, query.order_field)
			descending = query.direction is Direction.DESCENDING
			statement = statement.where(column.isnot(None)).order_by(
				column.desc() if descending else column.asc(),
				table.c.id.desc() if descending else table.c.id.asc(),
			)
			if query.start is not None:
				statement = statement.where(self._bound(table, column, query.start, descending, is_start=True))
			if query.end is not None:
				statement = statement.where(self._bound(table, column, query.end, descending, is_start=False))

		if query.limit_count is not None:
			statement = statement.limit(query.limit_count)
		return statement

	@staticmethod
	def _bound(table: Table, column, cursor: Cursor, descending: bool, is_start: bool):
		"""Condition keeping rows on the inner side of a cursor"""
		# Rows must sort after a start cursor and before an end cursor
		greater = is_start != descending
		beyond = column > cursor.value if greater else column < cursor.value

		if cursor.document_id is None:
			return or_(beyond, column == cursor.value) if cursor.inclusive else beyond

		id_column = table.c.id
		if greater:
			tie = id_column >= cursor.document_id if cursor.inclusive else id_column > cursor.document_id
		else:
			tie = id_column <= cursor.document_id if cursor.inclusive else id_column < cursor.document_id
		return or_(beyond, and_(column == cursor.value, tie))

	def _condition(self, table: Table, condition: Filter):
		column = self._column(table, condition.field)
		value = condition.value
		if condition.op == "==":
			return column == value
		if condition.op == "!=":
			return column != value
		if condition.op == "<":
			return column < value
		if condition.op == "<=":
			return column <= value
		if condition.op == ">":
			return column > value
		if condition.op == ">=":
			return column >= value
		return column.in_(list(value))

	# =====================================
	# Helpers
	# =====================================
	def _table(self, collection: str) -> Table:
		try:
			return self._tables[collection]
		except KeyError:
			raise DocumentStoreError(f"Unknown collection: {collection}") from None

	@staticmethod
	def _column(table: Table, name: str):
		try:
			return table.c[name]
		except KeyError:
			raise DocumentStoreError(f"Unknown field {name!r} in {table.name}") from None

	def _insert_values(self, table: Table, data: Dict[str, Any]) -> Dict[str, Any]:
		values = {}
		for name, value in data.items():
			self._column(table, name)
			if isinstance(value, Increment):
				values[name] = value.amount
			elif value is SERVER_TIMESTAMP:
				values[name] = datetime.now(timezone.utc)
			else:
				values[name] = value
		return values

	def _update_values(self, table: Table, data: Dict[str, Any]) -> Dict[str, Any]:
		values = {}
		for name, value in data.items():
			column = self._column(table, name)
			if isinstance(value, Increment):
				values[name] = func.coalesce(column, 0) + value.amount
			elif value is SERVER_TIMESTAMP:
				values[name] = datetime.now(timezone.utc)
			else:
				values[name] = value
		return values

	@staticmethod
	async def _exists(session: AsyncSession, table: Table, document_id: str) -> bool:
		result = await session.execute(select(table.c.id).where(table.c.id == document_id))
		return result.first() is not None

	@staticmethod
	def _snapshot(row) -> Snapshot:
		data = dict(row._mapping)
		document_id = data.pop("id")
		return Snapshot(id=document_id, data=data)

	@asynccontextmanager
	async def _transaction(self) -> AsyncIterator[AsyncSession]:
		async with self._session_factory() as session:
			try:
				yield session
				await session.commit()
			except SQLAlchemyError as e:
				await session.rollback()
				logger.error(f"Document store operation failed: {e}")
				raise DocumentStoreError(str(e)) from e
