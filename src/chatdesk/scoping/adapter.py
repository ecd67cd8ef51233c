"""Document-style persistence adapter over SQLAlchemy.

Filters are plain dicts: ``{"status": "open", "created_at": {"$gte": ts}}``.
Supported operators: ``$in``, ``$nin``, ``$ne``, ``$gt``, ``$gte``, ``$lt``,
``$lte``. Keys may be snake_case attribute names or their camelCase form.
Updates also accept ``{"$inc": {"messageCount": 1}}``, applied as a SQL
expression on the stored value.
"""

import re
from typing import Any, Optional, Sequence

from sqlalchemy import ColumnElement, and_, delete, func, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatdesk.common.exceptions import ValidationError

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

_OPERATORS = {
    "$in": lambda col, v: col.in_(list(v)),
    "$nin": lambda col, v: col.not_in(list(v)),
    "$ne": lambda col, v: col.is_not(None) if v is None else col != v,
    "$gt": lambda col, v: col > v,
    "$gte": lambda col, v: col >= v,
    "$lt": lambda col, v: col < v,
    "$lte": lambda col, v: col <= v,
}

_ACCUMULATORS = {"$sum", "$avg", "$min", "$max"}


def field_name(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def column_of(model, key: str):
    name = field_name(key)
    if name not in model.__mapper__.column_attrs:
        raise ValidationError(f"Unknown field '{key}'")
    return getattr(model, name)


def compile_filter(model, filter: Optional[dict]) -> list[ColumnElement]:
    clauses: list[ColumnElement] = []
    for key, value in (filter or {}).items():
        column = column_of(model, key)
        if isinstance(value, dict):
            for op, operand in value.items():
                try:
                    clauses.append(_OPERATORS[op](column, operand))
                except KeyError:
                    raise ValidationError(f"Unsupported operator '{op}'") from None
        elif value is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == value)
    return clauses


def _values(model, values: dict) -> dict:
    for key in values:
        column_of(model, key)
    return {field_name(k): v for k, v in values.items()}


def _update_values(model, values: dict) -> dict:
    values = dict(values)
    increments = values.pop("$inc", None) or {}
    compiled = _values(model, values)
    for key, amount in increments.items():
        compiled[field_name(key)] = column_of(model, key) + amount
    return compiled


class StorageAdapter:
    """Executes filter-dict operations in one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(
        self,
        model,
        filter: Optional[dict] = None,
        *,
        sort: Optional[Sequence[tuple[str, int]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list:
        stmt = select(model).where(and_(true(), *compile_filter(model, filter)))
        for key, direction in sort or ():
            column = column_of(model, key)
            stmt = stmt.order_by(column.desc() if direction < 0 else column.asc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_one(self, model, filter: Optional[dict] = None):
        rows = await self.find(model, filter, limit=1)
        return rows[0] if rows else None

    async def count(self, model, filter: Optional[dict] = None) -> int:
        stmt = select(func.count()).select_from(model).where(
            and_(true(), *compile_filter(model, filter))
        )
        return (await self.session.execute(stmt)).scalar_one()

    async def insert(self, model, values: dict):
        obj = model(**_values(model, values))
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def update(self, model, filter: Optional[dict], values: dict) -> int:
        stmt = (
            update(model)
            .where(and_(true(), *compile_filter(model, filter)))
            .values(**_update_values(model, values))
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def delete(self, model, filter: Optional[dict]) -> int:
        stmt = (
            delete(model)
            .where(and_(true(), *compile_filter(model, filter)))
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def aggregate(self, model, pipeline: list[dict]) -> list[dict[str, Any]]:
        """Run a ``$match`` / ``$group`` / ``$sort`` / ``$limit`` pipeline."""
        where: list[ColumnElement] = []
        group: Optional[dict] = None
        order: list[tuple[str, int]] = []
        limit: Optional[int] = None

        for stage in pipeline:
            if len(stage) != 1:
                raise ValidationError("Each pipeline stage must have exactly one operator")
            (op, spec), = stage.items()
            if op == "$match":
                if group is not None:
                    raise ValidationError("$match after $group is not supported")
                where.extend(compile_filter(model, spec))
            elif op == "$group":
                group = spec
            elif op == "$sort":
                order.extend(spec.items())
            elif op == "$limit":
                limit = int(spec)
            else:
                raise ValidationError(f"Unsupported pipeline stage '{op}'")

        if group is None:
            stmt = select(model).where(and_(true(), *where))
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = (await self.session.execute(stmt)).scalars().all()
            return [_as_dict(row) for row in rows]

        key_expr = group.get("_id")
        columns = []
        group_by = []
        if isinstance(key_expr, str) and key_expr.startswith("$"):
            key_col = column_of(model, key_expr[1:])
            columns.append(key_col.label("_id"))
            group_by.append(key_col)
        for name, acc in group.items():
            if name == "_id":
                continue
            columns.append(_accumulator(model, acc).label(name))

        stmt = select(*columns).select_from(model).where(and_(true(), *where))
        if group_by:
            stmt = stmt.group_by(*group_by)
        labels = {c.name: c for c in columns}
        for key, direction in order:
            target = labels.get(key)
            if target is None:
                raise ValidationError(f"Cannot sort on '{key}'")
            stmt = stmt.order_by(target.desc() if direction < 0 else target.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        rows = [dict(row._mapping) for row in result]
        if not group_by:
            for row in rows:
                row.setdefault("_id", key_expr)
        return rows


def _accumulator(model, acc: dict):
    if not isinstance(acc, dict) or len(acc) != 1:
        raise ValidationError("Group accumulators take the form {'$sum': 1}")
    (op, arg), = acc.items()
    if op not in _ACCUMULATORS:
        raise ValidationError(f"Unsupported accumulator '{op}'")
    if op == "$sum" and isinstance(arg, (int, float)):
        return func.count() * arg if arg != 1 else func.count()
    if not (isinstance(arg, str) and arg.startswith("$")):
        raise ValidationError(f"{op} expects a '$field' reference")
    column = column_of(model, arg[1:])
    return {"$sum": func.sum, "$avg": func.avg, "$min": func.min, "$max": func.max}[op](column)


def _as_dict(row) -> dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in row.__mapper__.column_attrs}
