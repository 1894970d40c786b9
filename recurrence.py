import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Expense, FixedExpenseTemplate
from periods import local_today, month_period


logger = logging.getLogger(__name__)

# Columns that identified "the same" recurring expense before rows carried a
# template id.
LEGACY_TEMPLATE_KEY = (
    "user_id",
    "category",
    "description",
    "unit_value_cents",
    "quantity",
    "total_value_cents",
    "payment_method",
    "account",
    "location",
    "installments",
    "notes",
)


def _legacy_key(row: Expense) -> tuple:
    return tuple(getattr(row, name) for name in LEGACY_TEMPLATE_KEY)


@dataclass
class MaterializeResult:
    templates: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0


class FixedExpenseMaterializer:
    """Ensures every active fixed-expense template has an instance this month."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def attach_legacy_templates(self, user_id: Optional[int] = None) -> int:
        stmt = select(Expense).where(
            Expense.is_fixed.is_(True), Expense.template_id.is_(None)
        )
        if user_id is not None:
            stmt = stmt.where(Expense.user_id == user_id)
        rows = self.session.scalars(stmt.order_by(Expense.date, Expense.id)).all()

        groups: dict[tuple, list[Expense]] = {}
        for row in rows:
            groups.setdefault(_legacy_key(row), []).append(row)

        if groups:
            # Instances where recurrence was switched off belong to the same
            # series so the latest-row check can see them.
            stmt = select(Expense).where(
                Expense.is_fixed.is_(False), Expense.template_id.is_(None)
            )
            if user_id is not None:
                stmt = stmt.where(Expense.user_id == user_id)
            for row in self.session.scalars(stmt).all():
                members = groups.get(_legacy_key(row))
                if members is not None:
                    members.append(row)

        for members in groups.values():
            template = FixedExpenseTemplate(user_id=members[0].user_id)
            self.session.add(template)
            self.session.flush()
            for row in members:
                row.template_id = template.id
        if groups:
            self.session.flush()
            attached = sum(len(members) for members in groups.values())
            logger.info(
                f"recurring_legacy_attach: rows={attached} templates={len(groups)}"
            )
        return len(groups)

    def active_template_ids(self, user_id: Optional[int] = None) -> list[int]:
        stmt = (
            select(Expense.template_id)
            .where(Expense.is_fixed.is_(True), Expense.template_id.isnot(None))
            .distinct()
            .order_by(Expense.template_id)
        )
        if user_id is not None:
            stmt = stmt.where(Expense.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def latest_instance(self, template_id: int) -> Optional[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.template_id == template_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def has_instance_in_month(self, latest: Expense, today: date) -> bool:
        month = month_period(today)
        stmt = (
            select(Expense.id)
            .where(
                Expense.user_id == latest.user_id,
                Expense.template_id == latest.template_id,
                Expense.date.between(month.start, month.end),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _materialize_template(self, template_id: int, today: date) -> bool:
        latest = self.latest_instance(template_id)
        if latest is None:
            logger.info(f"recurring_skip: template={template_id} reason=no_rows")
            return False
        if not latest.is_fixed:
            logger.info(f"recurring_skip: template={template_id} reason=unfixed")
            return False
        if self.has_instance_in_month(latest, today):
            return False

        instance = Expense(
            user_id=latest.user_id,
            date=month_period(today).start,
            category=latest.category,
            description=latest.description,
            unit_value_cents=latest.unit_value_cents,
            quantity=latest.quantity,
            total_value_cents=latest.total_value_cents,
            payment_method=latest.payment_method,
            account=latest.account,
            location=latest.location,
            is_fixed=True,
            payment_date=None,
            is_paid=False,
            installments=latest.installments,
            notes=latest.notes,
            template_id=template_id,
        )
        self.session.add(instance)
        self.session.flush()
        logger.info(
            f"recurring_created: template={template_id} user={latest.user_id} "
            f"date={instance.date.isoformat()}"
        )
        return True

    def materialize(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> MaterializeResult:
        today = today or local_today()
        result = MaterializeResult()
        try:
            if self.attach_legacy_templates(user_id):
                self.session.commit()
        except Exception:
            # Rows already carrying a template can still be processed.
            self.session.rollback()
            logger.exception(f"recurring_legacy_attach_failed: user={user_id}")
            result.failed += 1

        template_ids = self.active_template_ids(user_id)
        result.templates = len(template_ids)
        for template_id in template_ids:
            try:
                created = self._materialize_template(template_id, today)
                self.session.commit()
            except IntegrityError:
                # Another run inserted this month's row first.
                self.session.rollback()
                logger.info(f"recurring_skip: template={template_id} reason=exists")
                result.skipped += 1
                continue
            except Exception:
                self.session.rollback()
                logger.exception(f"recurring_failed: template={template_id}")
                result.failed += 1
                continue
            if created:
                result.created += 1
            else:
                result.skipped += 1
        logger.info(
            f"recurring_run: month={today:%Y-%m} templates={result.templates} "
            f"created={result.created} skipped={result.skipped} failed={result.failed}"
        )
        return result
