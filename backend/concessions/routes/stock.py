# backend/concessions/routes/stock.py
"""Stock ledger API routes: month snapshots, operator entries, sales report, spreadsheet."""

from io import BytesIO

from flask import Blueprint, current_app, g, jsonify, request, send_file

from ..decorators import ensure_theater_access, require_auth, require_role
from ..errors import PipelineError, ValidationFailed
from ..models.auth import ADMIN_ROLES, STAFF_ROLES
from ..models.stock import STOCK_SOURCE_CAFE, STOCK_SOURCES
from ..services import catalog_service, report_service, stock_entry_service, stock_ledger_service
from ..time_utils import utcnow
from ..units import format_quantity


stock_bp = Blueprint("stock", __name__, url_prefix="/api/cafe-stock")


def _year_month() -> tuple[int, int]:
    now = utcnow()
    year = request.args.get("year", now.year, type=int)
    month = request.args.get("month", now.month, type=int)
    if not 1 <= month <= 12:
        raise ValidationFailed("month must be between 1 and 12")
    return year, month


def _stock_source() -> str:
    stock_source = request.args.get("stockSource", STOCK_SOURCE_CAFE)
    if stock_source not in STOCK_SOURCES:
        raise ValidationFailed(f"stockSource must be one of {', '.join(STOCK_SOURCES)}")
    return stock_source


@stock_bp.get("/<int:theater_id>/<int:product_id>")
@require_auth
@require_role(*STAFF_ROLES)
def stock_month_route(theater_id: int, product_id: int):
    """StockMonth snapshot for ?year&month (default current month)."""
    try:
        ensure_theater_access(theater_id)
        year, month = _year_month()
        catalog_service.get_product(theater_id, product_id)
        snapshot = stock_ledger_service.snapshot(
            theater_id, product_id, year, month, stock_source=_stock_source()
        )
        return jsonify(snapshot), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load stock month")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/<int:theater_id>/<int:product_id>/entries")
@require_auth
@require_role(*ADMIN_ROLES)
def add_entry_route(theater_id: int, product_id: int):
    """
    Append an operator entry.

    Body: {kind, quantity, unit?, direction? (adjustment), entryDate?, note?, stockSource?}
    """
    try:
        ensure_theater_access(theater_id)
        balances = stock_entry_service.record_entry(
            theater_id,
            product_id,
            request.get_json(silent=True) or {},
            actor_user_id=g.current_user.id,
        )
        return jsonify({
            "productId": product_id,
            "balances": {source: format_quantity(value) for source, value in balances.items()},
        }), 201
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record stock entry")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/sales-report/<int:theater_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def sales_report_route(theater_id: int):
    try:
        ensure_theater_access(theater_id)
        year, month = _year_month()
        report = report_service.sales_report(
            theater_id,
            year,
            month,
            start_date=request.args.get("startDate"),
            end_date=request.args.get("endDate"),
        )
        return jsonify(report), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to build sales report")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/excel-all/<int:theater_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def stock_workbook_route(theater_id: int):
    """Spreadsheet of every product for ?year&month, optionally as of ?date."""
    try:
        ensure_theater_access(theater_id)
        year, month = _year_month()
        as_of = request.args.get("date")
        content = report_service.stock_workbook(
            theater_id, year, month, as_of=as_of, stock_source=_stock_source()
        )
        filename = f"stock_{theater_id}_{year}-{month:02d}"
        if as_of:
            filename += f"_{as_of}"
        return send_file(
            BytesIO(content),
            mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            as_attachment=True,
            download_name=f"{filename}.xlsx",
        )
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to build stock spreadsheet")
        return jsonify({"error": "Internal server error"}), 500
