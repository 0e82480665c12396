from flask import Blueprint, Response, jsonify, request
from flask_login import login_required

from playbymail import db
from playbymail.services import get_services
from playbymail.services.turnsheets.ingest import ingest_scan
from playbymail.services.turnsheets.renderer import DocumentFormat
from playbymail.services.turnsheets.store import get_sheet_by_id


turn_sheets = Blueprint('turn_sheets', __name__)

MIMETYPES = {
    DocumentFormat.HTML: 'text/html',
    DocumentFormat.PDF: 'application/pdf',
    DocumentFormat.PNG: 'image/png',
}


def requested_format(default='pdf'):
    try:
        return DocumentFormat(request.args.get('format', default).lower())
    except ValueError:
        return None


def document_response(content: bytes, fmt: DocumentFormat, name: str) -> Response:
    response = Response(content, mimetype=MIMETYPES[fmt])
    response.headers['Content-Disposition'] = f'inline; filename="{name}.{fmt.value}"'
    return response


@turn_sheets.route('/turn-sheets/scan', methods=['POST'])
@login_required
def scan_turn_sheet():
    upload = request.files.get('image')
    image = upload.read() if upload else request.get_data()
    if not image:
        return jsonify({'error': 'image is required'}), 400
    result = ingest_scan(db.session, get_services(), image)
    return jsonify(result.to_dict()), 200


@turn_sheets.route('/turn-sheets/<sheet_id>', methods=['GET'])
@login_required
def get_turn_sheet(sheet_id):
    return jsonify(get_sheet_by_id(db.session, sheet_id).to_dict())


@turn_sheets.route('/turn-sheets/<sheet_id>/document', methods=['GET'])
@login_required
def turn_sheet_document(sheet_id):
    fmt = requested_format()
    if fmt is None:
        return jsonify({'error': 'format must be one of html, pdf, png'}), 400
    sheet = get_sheet_by_id(db.session, sheet_id)
    processor = get_services().processors.get(sheet.sheet_type)
    content = processor.generate_turn_sheet(fmt, sheet.sheet_data)
    return document_response(content, fmt, f"turn-sheet-{sheet.id}")


@turn_sheets.route('/sheet-types/<sheet_type>/preview', methods=['GET'])
@login_required
def preview_sheet_type(sheet_type):
    fmt = requested_format('html')
    if fmt is None:
        return jsonify({'error': 'format must be one of html, pdf, png'}), 400
    processor = get_services().processors.get(sheet_type)
    content = processor.generate_turn_sheet(fmt, processor.generate_preview_data())
    return document_response(content, fmt, f"{sheet_type}-preview")
