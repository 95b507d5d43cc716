# backend/db.py
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, Integer, String, and_, or_, select, func, true, tuple_
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

DATA_DIR = os.getenv("DATA_DIR", "/usr/src/data")  # in Docker; locally override via env


def default_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    os.makedirs(DATA_DIR, exist_ok=True)
    return f"sqlite:///{os.path.join(DATA_DIR, 'roll.db')}"


engine = None
SessionLocal = sessionmaker(expire_on_commit=False)


class Base(DeclarativeBase):
    pass


class Voter(Base):
    __tablename__ = "voters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ac_no: Mapped[int] = mapped_column(Integer, index=True)
    part_no: Mapped[int] = mapped_column(Integer, index=True)
    sl_no_in_part: Mapped[int] = mapped_column(Integer)
    house_no: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    section_no: Mapped[str | None] = mapped_column(String, nullable=True)
    fm_name_v2: Mapped[str | None] = mapped_column(String, index=True, nullable=True)  # Tamil
    fm_name_en: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    rln_fm_nm_v2: Mapped[str | None] = mapped_column(String, nullable=True)  # Tamil
    rln_fm_nm_en: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    rln_type: Mapped[str | None] = mapped_column(String, nullable=True)  # H/F/M ...
    age: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    sex: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    id_card_no: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    ps_name: Mapped[str | None] = mapped_column(String, nullable=True)

    def to_dict(self) -> dict:
        return {
            "acNo": self.ac_no,
            "partNo": self.part_no,
            "slNoInPart": self.sl_no_in_part,
            "houseNo": self.house_no,
            "sectionNo": self.section_no,
            "fmNameV2": self.fm_name_v2,
            "fmNameEn": self.fm_name_en,
            "rlnFmNmV2": self.rln_fm_nm_v2,
            "rlnFmNmEn": self.rln_fm_nm_en,
            "rlnType": self.rln_type,
            "age": self.age,
            "sex": self.sex,
            "idCardNo": self.id_card_no,
            "psName": self.ps_name,
        }


class LegacyPart(Base):
    """2002 polling stations."""
    __tablename__ = "legacy_parts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    state_code: Mapped[str] = mapped_column(String)
    district_no: Mapped[int] = mapped_column(Integer, index=True)
    ac_no: Mapped[int] = mapped_column(Integer, index=True)
    part_no: Mapped[int] = mapped_column(Integer, index=True)
    part_name_en: Mapped[str | None] = mapped_column(String, nullable=True)
    part_name_v1: Mapped[str | None] = mapped_column(String, nullable=True)

    def to_dict(self) -> dict:
        return {"partNo": self.part_no, "partNameV1": self.part_name_v1, "partNameEn": self.part_name_en}


class LegacyPart2025(Base):
    __tablename__ = "legacypart_2025"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ac_no: Mapped[int] = mapped_column(Integer, index=True)
    part_no: Mapped[int] = mapped_column(Integer, index=True)
    locality_tn: Mapped[str | None] = mapped_column(String, nullable=True)
    part_name_tn: Mapped[str | None] = mapped_column(String, nullable=True)
    locality_v1: Mapped[str | None] = mapped_column(String, nullable=True)
    part_name_v1: Mapped[str | None] = mapped_column(String, nullable=True)

    def to_dict(self) -> dict:
        return {
            "acNo": self.ac_no,
            "partNo": self.part_no,
            "partNameV1": self.part_name_v1,
            "partNameTn": self.part_name_tn,
            "localityV1": self.locality_v1,
            "localityTn": self.locality_tn,
        }


class PartMap(Base):
    """Which 2025 AC:part each 2002 AC:part became after delimitation."""
    __tablename__ = "map_2025_2002_part"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ac_no_2002: Mapped[int] = mapped_column(Integer, index=True)
    part_no_2002: Mapped[int] = mapped_column(Integer, index=True)
    ac_no_2025: Mapped[int] = mapped_column(Integer, index=True)
    part_no_2025: Mapped[int] = mapped_column(Integer, index=True)


def init_db(database_url: str | None = None):
    global engine
    if engine is not None:
        engine.dispose()
    url = database_url or default_database_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(engine)
    if url.startswith("sqlite"):
        with engine.begin() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
            conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
            conn.exec_driver_sql("PRAGMA busy_timeout=5000;")
    logging.info(f"[db] ready: {engine.url.render_as_string(hide_password=True)}")
    return engine


@contextmanager
def db_session():
    s = SessionLocal()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


# ---------- Query helpers ----------

@dataclass(frozen=True)
class VoterQuery:
    name: str = ""
    relation_name: str = ""
    house_no: str = ""
    id_card_no: str = ""
    part_no: int | None = None
    age: int | None = None
    sex: str = ""
    ac_no: int | None = None


def _contains(column, text: str):
    # user text is matched literally, not as a pattern
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return column.ilike(f"%{escaped}%", escape="\\")


def voter_conditions(q: VoterQuery) -> list:
    conds = []
    if q.name:
        conds.append(or_(
            _contains(Voter.fm_name_v2, q.name),
            _contains(Voter.fm_name_en, q.name),
            _contains(Voter.rln_fm_nm_v2, q.name),
            _contains(Voter.rln_fm_nm_en, q.name),
        ))
    if q.relation_name:
        conds.append(or_(
            _contains(Voter.rln_fm_nm_v2, q.relation_name),
            _contains(Voter.rln_fm_nm_en, q.relation_name),
        ))
    if q.house_no:
        conds.append(Voter.house_no == q.house_no)
    if q.id_card_no:
        conds.append(Voter.id_card_no == q.id_card_no)
    if q.part_no is not None:
        conds.append(Voter.part_no == q.part_no)
    if q.age is not None:
        conds.append(Voter.age == q.age)
    if q.sex:
        conds.append(Voter.sex == q.sex.upper())
    if q.ac_no is not None:
        conds.append(Voter.ac_no == q.ac_no)
    return conds


def search_voters(session, q: VoterQuery, page: int = 1, limit: int = 50) -> tuple[list[Voter], int]:
    where = and_(true(), *voter_conditions(q))
    total = session.execute(select(func.count(Voter.id)).where(where)).scalar_one()
    rows = session.execute(
        select(Voter)
        .where(where)
        .order_by(Voter.ac_no, Voter.part_no, Voter.sl_no_in_part)
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def polling_stations(session, ac_no: int) -> list[LegacyPart]:
    return list(session.execute(
        select(LegacyPart).where(LegacyPart.ac_no == ac_no).order_by(LegacyPart.part_no)
    ).scalars().all())


def polling_stations_2025(session, ac_no_2002: int | None = None) -> list[LegacyPart2025]:
    stmt = select(LegacyPart2025).order_by(LegacyPart2025.ac_no, LegacyPart2025.part_no)
    if ac_no_2002 is not None:
        pairs = session.execute(
            select(PartMap.ac_no_2025, PartMap.part_no_2025).where(PartMap.ac_no_2002 == ac_no_2002)
        ).all()
        if not pairs:
            return []
        stmt = stmt.where(tuple_(LegacyPart2025.ac_no, LegacyPart2025.part_no).in_([tuple(p) for p in pairs]))
    return list(session.execute(stmt).scalars().all())
