# backend/roll.py
import logging
import math
import re

from flask import Blueprint, request, jsonify

from db import db_session, VoterQuery, search_voters, polling_stations, polling_stations_2025
from guard import require_signature

roll_bp = Blueprint("roll", __name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200

_AC_RE = re.compile(r"(?:AC)?\s*([0-9]{1,9})", re.IGNORECASE)


class QueryError(ValueError):
    pass


def parse_constituency(raw: str) -> int:
    """'AC210' / 'ac210' / '210' -> 210"""
    m = _AC_RE.fullmatch((raw or "").strip())
    if not m:
        raise QueryError(f"Invalid constituency: {raw!r}")
    return int(m.group(1))


def _int_arg(name: str, default=None):
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    if not re.fullmatch(r"-?[0-9]{1,9}", raw):
        raise QueryError(f"Parameter '{name}' must be an integer")
    return int(raw)


def _s(name: str) -> str:
    return " ".join((request.args.get(name) or "").split())


def _fail(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


@roll_bp.get("/api/voters/search")
@require_signature
def voters_search():
    """
    Query params: name, relationName, houseNo, idCardNo, partNo, age, sex, constituency, page, limit
    Response: { success, data: [voter...], pagination: {total, page, limit, totalPages} }
    """
    try:
        constituency = _s("constituency")
        q = VoterQuery(
            name=_s("name"),
            relation_name=_s("relationName"),
            house_no=_s("houseNo"),
            id_card_no=_s("idCardNo"),
            part_no=_int_arg("partNo"),
            age=_int_arg("age"),
            sex=_s("sex"),
            ac_no=parse_constituency(constituency) if constituency else None,
        )
        page = max(_int_arg("page", 1), 1)
        limit = min(max(_int_arg("limit", DEFAULT_LIMIT), 1), MAX_LIMIT)
    except QueryError as e:
        return _fail(str(e), 400)

    try:
        with db_session() as s:
            rows, total = search_voters(s, q, page=page, limit=limit)
            data = [v.to_dict() for v in rows]
    except Exception:
        logging.exception("[search] voter search failed")
        return _fail("An error occurred while searching", 500)

    logging.info(f"[search] page={page} limit={limit} total={total}")
    return jsonify({
        "success": True,
        "data": data,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    })


@roll_bp.get("/api/polling-stations")
@require_signature
def polling_stations_2002():
    tsc = _s("tsc")
    if not tsc:
        return _fail("Constituency (tsc) parameter is required", 400)
    try:
        ac_no = parse_constituency(tsc)
    except QueryError as e:
        return _fail(str(e), 400)

    try:
        with db_session() as s:
            data = [p.to_dict() for p in polling_stations(s, ac_no)]
    except Exception:
        logging.exception("[stations] polling stations fetch failed")
        return _fail("An error occurred while fetching polling stations", 500)
    return jsonify({"success": True, "data": data})


@roll_bp.get("/api/polling-stations-2025")
@require_signature
def polling_stations_current():
    """Without `constituency` every 2025 station is returned; with it, only those mapped from that 2002 AC."""
    constituency = _s("constituency")
    try:
        ac_no = parse_constituency(constituency) if constituency else None
    except QueryError as e:
        return _fail(str(e), 400)

    try:
        with db_session() as s:
            data = [p.to_dict() for p in polling_stations_2025(s, ac_no)]
    except Exception:
        logging.exception("[stations] 2025 polling stations fetch failed")
        return _fail("An error occurred while fetching polling stations", 500)
    return jsonify({"success": True, "data": data})
