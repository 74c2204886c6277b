"""SQLAlchemy ORM database models for the victims database.

Defines the three tables of the local fingerprint cache using SQLAlchemy 2.0
declarative mapping with ``Mapped`` type annotations. All models inherit from
``Base`` which maps dict and list annotations to portable JSON columns.

Entity relationships:
    Advisory --1:N--> Fingerprint
    Advisory --1:N--> MetadataProperty
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models.

    Maps ``dict[str, Any]`` and ``list[Any]`` annotations to JSON columns so
    Python containers are stored without explicit column type declarations.
    """

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[Any]: JSON,
    }


class Advisory(Base):
    """Core fields of one known-vulnerable artifact signature.

    Identifiers are generated by the database and never reused, even after
    the row is deleted (``sqlite_autoincrement``). ``created`` is the upstream
    timestamp used as the synchronization watermark.
    """

    __tablename__ = "advisories"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Coordinates
    vendor: Mapped[str] = mapped_column(String(256), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    version: Mapped[str] = mapped_column(String(128), nullable=False)

    cves: Mapped[list[Any]] = mapped_column(JSON, default=list)
    created: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Provenance
    submitter: Mapped[str] = mapped_column(String(256), default="")
    format: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    # Relationships
    fingerprints: Mapped[list["Fingerprint"]] = relationship(
        back_populates="advisory",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Fingerprint.id",
    )
    properties: Mapped[list["MetadataProperty"]] = relationship(
        back_populates="advisory",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MetadataProperty.id",
    )


class Fingerprint(Base):
    """One file digest of an advisory under one hash algorithm.

    The artifact's combined digest for the algorithm is repeated on every
    row of that algorithm.
    """

    __tablename__ = "fingerprints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    advisory_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("advisories.id", ondelete="CASCADE"), nullable=False, index=True
    )

    algorithm: Mapped[str] = mapped_column(String(32), nullable=False)
    combined: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    hash: Mapped[str] = mapped_column(String(256), nullable=False, index=True)

    advisory: Mapped["Advisory"] = relationship(back_populates="fingerprints")


class MetadataProperty(Base):
    """One property of an advisory's metadata, grouped by source.

    Sources are things like ``MANIFEST.MF`` or ``pom.properties``.
    """

    __tablename__ = "metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(256), nullable=False)
    advisory_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("advisories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    property: Mapped[str] = mapped_column(String(256), nullable=False)
    value: Mapped[str | None] = mapped_column(Text)

    advisory: Mapped["Advisory"] = relationship(back_populates="properties")
