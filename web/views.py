"""
Flask views for the Toll Reconciliation JSON API.
"""
from flask import Blueprint, request, jsonify, current_app
from werkzeug.utils import secure_filename
from pathlib import Path
import json
import logging
import threading
import uuid

from app import cache
from toll_engine import (
    ApplyConflict,
    ColumnMappingError,
    ConflictReason,
    StorageError,
    apply,
    concept_invoice_toll_status,
    dashboard_query,
    import_file,
    load_rows,
    preview_columns,
    reconcile,
    reconcile_invoice,
    unapply,
)
from storage.service import StorageService
from config import config

logger = logging.getLogger(__name__)
bp = Blueprint('main', __name__)

_services = {}
_services_lock = threading.Lock()


def get_storage_service() -> StorageService:
    """Storage service for the configured data directory, shared across requests."""
    base_dir = Path(current_app.config.get('TOLL_DATA_DIR', config.storage.base_dir))
    with _services_lock:
        service = _services.get(base_dir)
        if service is None:
            service = StorageService(base_dir=base_dir, table_files=config.storage.table_files)
            _services[base_dir] = service
        return service


def _error(message: str, status: int, **extra):
    payload = {'error': message}
    payload.update(extra)
    return jsonify(payload), status


def _request_payload() -> dict:
    """JSON body, or an empty dict when the body is missing or not JSON."""
    return request.get_json(silent=True) or {}


def _record_ids(payload: dict) -> list:
    record_ids = payload.get('record_ids')
    if not isinstance(record_ids, list) or not record_ids:
        raise ValueError("'record_ids' must be a non-empty list")
    return [str(record_id) for record_id in record_ids]


def _column_mapping_from_form():
    """Optional operator column mapping sent as a JSON form field."""
    raw = request.form.get('column_mapping')
    if not raw:
        return None
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"column_mapping is not valid JSON: {e}") from e
    if not isinstance(mapping, dict):
        raise ValueError("column_mapping must be an object of field -> column label or index")
    return mapping


def _save_upload(storage: StorageService) -> tuple:
    """
    Save the uploaded export under the uploads folder.

    Returns:
        (file_path, original filename)

    Raises:
        ValueError: If no file was sent or its type is not supported
    """
    if 'file' not in request.files:
        raise ValueError('No file uploaded')

    file = request.files['file']
    if file.filename == '':
        raise ValueError('No file selected')

    filename = secure_filename(file.filename)
    if Path(filename).suffix.lower() not in config.imports.allowed_extensions:
        raise ValueError(f"Please upload one of: {', '.join(config.imports.allowed_extensions)}")

    upload_dir = storage.base_dir / config.storage.uploads_dir
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / f"{uuid.uuid4().hex}_{filename}"
    file.save(str(file_path))
    logger.info(f"[UPLOAD] Saved {file.filename} to {file_path}")
    return file_path, filename


def _conflict_status(reason: ConflictReason) -> int:
    if reason == ConflictReason.INVOICE_NOT_FOUND:
        return 404
    return 409


@bp.route('/toll/import', methods=['POST'])
def import_toll():
    """Import a toll export and reconcile it against concept invoices."""
    try:
        storage = get_storage_service()
        column_mapping = _column_mapping_from_form()
        file_path, filename = _save_upload(storage)
        result = import_file(storage, file_path, filename, column_mapping)
        cache.clear()
        return jsonify(result)
    except ColumnMappingError as e:
        logger.warning(f"[IMPORT] Column mapping failed: {e}")
        return _error(str(e), 400, missing=e.missing, available=e.available)
    except ValueError as e:
        logger.warning(f"[IMPORT] Rejected upload: {e}")
        return _error(str(e), 400)
    except StorageError as e:
        # chunks committed before the failure stay stored
        cache.clear()
        logger.error(f"[IMPORT] Storage failure: {e}")
        return _error(str(e), 500)


@bp.route('/toll/columns', methods=['POST'])
def preview_toll_columns():
    """Detected headers and column mapping for an export, without importing it."""
    try:
        storage = get_storage_service()
        file_path, filename = _save_upload(storage)
        return jsonify(preview_columns(load_rows(file_path, filename)))
    except ColumnMappingError as e:
        return _error(str(e), 400, missing=e.missing, available=e.available)
    except ValueError as e:
        return _error(str(e), 400)


@bp.route('/toll/reconcile', methods=['POST'])
def reconcile_toll():
    """Apply every unapplied group to its target concept invoice."""
    try:
        result = reconcile(get_storage_service())
        cache.clear()
        return jsonify(result)
    except StorageError as e:
        logger.error(f"[RECONCILE] Storage failure: {e}")
        return _error(str(e), 500)


@bp.route('/toll/invoices/<invoice_id>/reconcile', methods=['POST'])
def reconcile_toll_invoice(invoice_id):
    """Apply the unapplied toll for the week and plate one invoice references."""
    try:
        result = reconcile_invoice(get_storage_service(), invoice_id)
        cache.clear()
        return jsonify(result)
    except ApplyConflict as e:
        return _error(str(e), _conflict_status(e.reason), reason=e.reason.value, detail=e.detail)
    except StorageError as e:
        logger.error(f"[RECONCILE] Storage failure: {e}")
        return _error(str(e), 500)


@bp.route('/toll/apply', methods=['POST'])
def apply_toll():
    """Bill one group of records on an invoice line."""
    payload = _request_payload()
    invoice_id = payload.get('invoice_id')
    try:
        record_ids = _record_ids(payload)
        if not invoice_id:
            raise ValueError("'invoice_id' is required")
        result = apply(get_storage_service(), record_ids, str(invoice_id))
    except ValueError as e:
        return _error(str(e), 400)
    except StorageError as e:
        logger.error(f"[APPLY] Storage failure: {e}")
        return _error(str(e), 500)

    cache.clear()
    if not result.ok:
        return jsonify(result.to_dict()), _conflict_status(ConflictReason(result.reason))
    return jsonify(result.to_dict())


@bp.route('/toll/unapply', methods=['POST'])
def unapply_toll():
    """Clear application links; invoice lines stay untouched."""
    try:
        result = unapply(get_storage_service(), _record_ids(_request_payload()))
        cache.clear()
        return jsonify(result)
    except ValueError as e:
        return _error(str(e), 400)
    except StorageError as e:
        logger.error(f"[APPLY] Storage failure: {e}")
        return _error(str(e), 500)


@bp.route('/toll/records', methods=['DELETE'])
def delete_toll_records():
    """Delete toll records on operator request."""
    try:
        deleted = get_storage_service().delete_records(_record_ids(_request_payload()))
        cache.clear()
        return jsonify({'ok': True, 'deleted': deleted})
    except ValueError as e:
        return _error(str(e), 400)
    except StorageError as e:
        logger.error(f"[STORAGE] Delete failed: {e}")
        return _error(str(e), 500)


@bp.route('/toll/dashboard')
def dashboard():
    """Reconciliation dashboard for the last days_back days."""
    try:
        days_back = request.args.get('days_back', default=config.dashboard.default_days_back, type=int)
        if days_back < 0:
            raise ValueError("'days_back' must be zero or positive")

        cache_key = f"toll-dashboard:{days_back}"
        result = cache.get(cache_key)
        if result is None:
            result = dashboard_query(get_storage_service(), days_back=days_back)
            cache.set(cache_key, result)
        else:
            logger.debug(f"[DASHBOARD] Served {cache_key} from cache")
        return jsonify(result)
    except ValueError as e:
        return _error(str(e), 400)
    except StorageError as e:
        logger.error(f"[DASHBOARD] Storage failure: {e}")
        return _error(str(e), 500)


@bp.route('/toll/concept-invoices')
def concept_invoices():
    """Concept invoices with their open toll placeholder count."""
    needs_toll_only = request.args.get('needs_toll', '0') != '0'
    limit = request.args.get('limit', type=int)
    try:
        invoices = concept_invoice_toll_status(get_storage_service(), needs_toll_only=needs_toll_only, limit=limit)
        return jsonify({'invoices': invoices})
    except StorageError as e:
        logger.error(f"[DASHBOARD] Storage failure: {e}")
        return _error(str(e), 500)
