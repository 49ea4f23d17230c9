"""
Equitender – Domain Models

Organizations and their members, tenders, offers, and the equity log that
records every lifecycle transition.

Status / mode / role values are plain strings grouped in constant classes
(portable across SQLite and PostgreSQL, readable in the equity log metadata).

IMPORTANT:
- Status columns are written ONLY by the lifecycle state machines
  (equitender/lifecycle). Nothing else assigns Tender.status / Offer.status.
- Invariant A (one active offer per organization and tender) is enforced by the
  partial unique index uq_offers_active_per_org. The application check in
  OfferStateMachine.submit is advisory; the index is authoritative.
- EquityLog rows are append-only. ORM-level UPDATE/DELETE is refused below.
"""

from __future__ import annotations

from decimal import Decimal

from flask_login import UserMixin
from sqlalchemy import event
from werkzeug.security import generate_password_hash, check_password_hash

from .extensions import db
from .utils import utcnow


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------
class Role:
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"

    ALL = (OWNER, ADMIN, EDITOR, VIEWER)


class TenderStatus:
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    CLOSED = "CLOSED"
    AWARDED = "AWARDED"
    CANCELLED = "CANCELLED"

    TERMINAL = (AWARDED, CANCELLED)


class DisclosureMode:
    CLASSIC = "CLASSIC"
    ANONYMOUS = "ANONYMOUS"

    ALL = (CLASSIC, ANONYMOUS)


class Visibility:
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"

    ALL = (PUBLIC, PRIVATE)


class OfferStatus:
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    SHORTLISTED = "SHORTLISTED"
    REJECTED = "REJECTED"
    ACCEPTED = "ACCEPTED"
    AWARDED = "AWARDED"
    WITHDRAWN = "WITHDRAWN"

    ACTIVE = (DRAFT, SUBMITTED, SHORTLISTED, ACCEPTED)
    TERMINAL = (REJECTED, AWARDED, WITHDRAWN)


class PaymentStatus:
    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class EquityAction:
    TENDER_CREATED = "TENDER_CREATED"
    TENDER_PUBLISHED = "TENDER_PUBLISHED"
    TENDER_CLOSED = "TENDER_CLOSED"
    TENDER_AWARDED = "TENDER_AWARDED"
    TENDER_CANCELLED = "TENDER_CANCELLED"
    TENDER_DELETED = "TENDER_DELETED"
    IDENTITY_REVEALED = "IDENTITY_REVEALED"
    OFFER_RECEIVED = "OFFER_RECEIVED"
    OFFER_SHORTLISTED = "OFFER_SHORTLISTED"
    OFFER_UNSHORTLISTED = "OFFER_UNSHORTLISTED"
    OFFER_REJECTED = "OFFER_REJECTED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_WITHDRAWN = "OFFER_WITHDRAWN"


class NotificationType:
    OFFER_RECEIVED = "OFFER_RECEIVED"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_REJECTED = "OFFER_REJECTED"
    OFFER_SHORTLISTED = "OFFER_SHORTLISTED"
    OFFER_WITHDRAWN = "OFFER_WITHDRAWN"
    TENDER_PUBLISHED = "TENDER_PUBLISHED"
    TENDER_AWARDED = "TENDER_AWARDED"
    TENDER_CANCELLED = "TENDER_CANCELLED"
    TENDER_MATCH = "TENDER_MATCH"
    COMMENT_ADDED = "COMMENT_ADDED"

    ALL = (
        OFFER_RECEIVED,
        OFFER_ACCEPTED,
        OFFER_REJECTED,
        OFFER_SHORTLISTED,
        OFFER_WITHDRAWN,
        TENDER_PUBLISHED,
        TENDER_AWARDED,
        TENDER_CANCELLED,
        TENDER_MATCH,
        COMMENT_ADDED,
    )


# ---------------------------------------------------------------------
# Organizations & users
# ---------------------------------------------------------------------
class Organization(db.Model):
    """A procuring and/or bidding organization."""

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False, index=True)
    email = db.Column(db.String(255))
    phone = db.Column(db.String(50))
    address = db.Column(db.String(255))
    city = db.Column(db.String(100))
    canton = db.Column(db.String(10))

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    members = db.relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
    )

    def member_ids(self, roles=None) -> list[int]:
        return [m.user_id for m in self.members if roles is None or m.role in roles]

    def __repr__(self):
        return f"<Organization {self.name}>"


class User(UserMixin, db.Model):
    """Platform login user. Belongs to organizations through OrganizationMember."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255))
    password_hash = db.Column(db.String(255), nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    memberships = db.relationship(
        "OrganizationMember",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f"<User {self.email}>"


class OrganizationMember(db.Model):
    __tablename__ = "organization_members"

    id = db.Column(db.Integer, primary_key=True)

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = db.Column(db.String(20), nullable=False, default=Role.VIEWER)

    created_at = db.Column(db.DateTime, default=utcnow)

    organization = db.relationship("Organization", back_populates="members")
    user = db.relationship("User", back_populates="memberships")

    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
    )


# ---------------------------------------------------------------------
# Tender domain
# ---------------------------------------------------------------------
class Tender(db.Model):
    """
    Request for offers published by a procuring organization.

    identity_revealed is one-way: set by TenderStateMachine (close after the
    deadline, award, explicit reveal) and never reset.
    """

    __tablename__ = "tenders"

    id = db.Column(db.Integer, primary_key=True)

    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = db.Column(db.String(255), nullable=False)
    summary = db.Column(db.String(500))
    description = db.Column(db.Text, nullable=False, default="")
    market_category = db.Column(db.String(80), index=True)

    budget = db.Column(db.Numeric(12, 2))
    currency = db.Column(db.String(3), nullable=False, default="CHF")

    city = db.Column(db.String(100))
    canton = db.Column(db.String(10), index=True)

    deadline = db.Column(db.DateTime, nullable=False, index=True)

    mode = db.Column(db.String(20), nullable=False, default=DisclosureMode.CLASSIC)
    visibility = db.Column(db.String(20), nullable=False, default=Visibility.PUBLIC)

    status = db.Column(db.String(20), nullable=False, default=TenderStatus.DRAFT, index=True)

    identity_revealed = db.Column(db.Boolean, nullable=False, default=False)
    revealed_at = db.Column(db.DateTime)

    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.NONE)

    published_at = db.Column(db.DateTime, index=True)
    closed_at = db.Column(db.DateTime)
    awarded_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    organization = db.relationship("Organization", backref=db.backref("tenders", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_id])

    offers = db.relationship(
        "Offer",
        back_populates="tender",
        cascade="all, delete-orphan",
        order_by="Offer.id",
    )

    @property
    def is_anonymous(self) -> bool:
        return self.mode == DisclosureMode.ANONYMOUS

    @property
    def is_terminal(self) -> bool:
        return self.status in TenderStatus.TERMINAL

    def __repr__(self):
        return f"<Tender {self.id} {self.status}>"


class Offer(db.Model):
    """
    A bid from one organization against one tender.

    anonymous_id is assigned at submission on ANONYMOUS tenders and is the only
    bidder label shown to the procuring organization until disclosure.
    """

    __tablename__ = "offers"

    id = db.Column(db.Integer, primary_key=True)

    tender_id = db.Column(
        db.Integer,
        db.ForeignKey("tenders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    offer_number = db.Column(db.String(50))
    price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="CHF")

    project_summary = db.Column(db.Text)
    description = db.Column(db.Text)
    methodology = db.Column(db.Text)
    timeline = db.Column(db.Text)
    validity_days = db.Column(db.Integer, nullable=False, default=90)

    # [{name, url, size, mime_type}] - upload itself is external
    documents = db.Column(db.JSON, nullable=False, default=list)

    status = db.Column(db.String(20), nullable=False, default=OfferStatus.DRAFT, index=True)

    anonymous_id = db.Column(db.String(20))
    submitted_at = db.Column(db.DateTime, index=True)

    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.NONE)
    paid_at = db.Column(db.DateTime)

    # first time the procuring organization opened the offer
    viewed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    tender = db.relationship("Tender", back_populates="offers")
    organization = db.relationship("Organization", backref=db.backref("offers", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_id])

    __table_args__ = (
        db.Index(
            "uq_offers_active_per_org",
            "tender_id",
            "organization_id",
            unique=True,
            sqlite_where=db.text("status IN ('DRAFT', 'SUBMITTED', 'SHORTLISTED', 'ACCEPTED')"),
            postgresql_where=db.text("status IN ('DRAFT', 'SUBMITTED', 'SHORTLISTED', 'ACCEPTED')"),
        ),
        db.Index(
            "uq_offers_one_accepted_per_tender",
            "tender_id",
            unique=True,
            sqlite_where=db.text("status = 'ACCEPTED'"),
            postgresql_where=db.text("status = 'ACCEPTED'"),
        ),
        db.UniqueConstraint("tender_id", "anonymous_id", name="uq_offer_anonymous_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in OfferStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in OfferStatus.TERMINAL

    def __repr__(self):
        return f"<Offer {self.id} {self.status}>"


class OfferComment(db.Model):
    """
    Internal comment of the procuring organization on a received offer.

    Never shown to the bidding organization.
    """

    __tablename__ = "offer_comments"

    id = db.Column(db.Integer, primary_key=True)

    offer_id = db.Column(
        db.Integer,
        db.ForeignKey("offers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    author_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    offer = db.relationship("Offer", backref=db.backref("comments", lazy=True, cascade="all, delete-orphan"))
    author = db.relationship("User")

    def __repr__(self):
        return f"<OfferComment {self.id} offer={self.offer_id}>"


# ---------------------------------------------------------------------
# Equity log (append-only audit trail)
# ---------------------------------------------------------------------
class EquityLog(db.Model):
    """
    One immutable entry per lifecycle transition.

    tender_id is deliberately not a foreign key: the trail outlives a deleted
    draft tender and keeps the referential id.
    sequence is strictly increasing per tender; (tender_id, sequence) is unique
    so two concurrent transitions on one tender cannot both commit.
    """

    __tablename__ = "equity_logs"

    id = db.Column(db.Integer, primary_key=True)

    tender_id = db.Column(db.Integer, nullable=False, index=True)
    sequence = db.Column(db.Integer, nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    user_name_snapshot = db.Column(db.String(255), nullable=True)
    # actor recorded under an anonymous label; user_id is withheld on reads until disclosure
    actor_masked = db.Column(db.Boolean, nullable=False, default=False)

    action = db.Column(db.String(40), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    # "metadata" is reserved on declarative classes
    details = db.Column("metadata", db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    user = db.relationship("User")

    __table_args__ = (
        db.UniqueConstraint("tender_id", "sequence", name="uq_equity_log_tender_sequence"),
    )


@event.listens_for(EquityLog, "before_update")
def _refuse_equity_log_update(mapper, connection, target):
    raise RuntimeError("EquityLog entries are append-only and cannot be updated.")


@event.listens_for(EquityLog, "before_delete")
def _refuse_equity_log_delete(mapper, connection, target):
    raise RuntimeError("EquityLog entries are append-only and cannot be deleted.")


# ---------------------------------------------------------------------
# Notifications & saved searches
# ---------------------------------------------------------------------
class Notification(db.Model):
    """In-app notification written by the default fanout adapter."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    type = db.Column(db.String(40), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    details = db.Column("metadata", db.JSON, nullable=False, default=dict)

    read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    read_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("notifications", lazy=True, cascade="all, delete-orphan"))


class SavedSearch(db.Model):
    """
    Stored tender search of a user. Consumed on publication to emit TENDER_MATCH.

    criteria keys: market_category, canton, city, mode, budget_min, budget_max, keywords
    """

    __tablename__ = "saved_searches"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    name = db.Column(db.String(255), nullable=False)
    criteria = db.Column(db.JSON, nullable=False, default=dict)
    alerts_enabled = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship("User", backref=db.backref("saved_searches", lazy=True, cascade="all, delete-orphan"))

    def matches(self, tender: Tender) -> bool:
        """Exact-field criteria match; an empty criterion never filters."""
        c = self.criteria or {}

        keywords = (c.get("keywords") or "").strip().lower()
        if keywords:
            haystack = f"{tender.title or ''} {tender.description or ''}".lower()
            if keywords not in haystack:
                return False

        for key, value in (
            ("market_category", tender.market_category),
            ("canton", tender.canton),
            ("city", tender.city),
            ("mode", tender.mode),
        ):
            if c.get(key) and c[key] != value:
                return False

        budget = Decimal(str(tender.budget)) if tender.budget is not None else None
        if c.get("budget_min") is not None:
            if budget is None or budget < Decimal(str(c["budget_min"])):
                return False
        if c.get("budget_max") is not None:
            if budget is None or budget > Decimal(str(c["budget_max"])):
                return False

        return True
