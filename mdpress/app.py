import atexit
import io
import logging
import tempfile
from pathlib import Path

from flask import Blueprint, Flask, abort, current_app, jsonify, request, send_file

from mdpress import __version__
from mdpress.config import Settings
from mdpress.core.errors import ExportError, ExportInProgressError, StorageError
from mdpress.core.renderer import MermaidInkRenderer, RenderPipeline
from mdpress.core.session import SessionController
from mdpress.core.state import LocalStorage
from mdpress.core.store import DocumentStore
from mdpress.export.assembler import PdfAssembler
from mdpress.export.engine import ExportEngine, export_filename
from mdpress.export.pagination import get_page_format

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


class Services:
    """Everything one editing session needs, built once per app."""

    def __init__(self, settings, store, session, pipeline, engine):
        self.settings = settings
        self.store = store
        self.session = session
        self.pipeline = pipeline
        self.engine = engine


def _services() -> Services:
    return current_app.extensions['mdpress']


def _document_json(doc, active_id):
    data = doc.to_dict()
    data['active'] = doc.id == active_id
    return data


def _require(doc_id):
    store = _services().store
    if doc_id not in store:
        abort(404, description=f"Unknown document '{doc_id}'")
    return store.get(doc_id)


def _payload():
    return request.get_json(silent=True) or {}


def _with_warning(body):
    warning = _services().store.last_warning
    if warning:
        body['warning'] = warning
    return body


# -------------------------------------------------------------------------
# Documents
# -------------------------------------------------------------------------

@api_bp.route('/documents', methods=['GET'])
def list_documents():
    store = _services().store
    return jsonify({
        'documents': [_document_json(d, store.active_id) for d in store.documents],
        'activeDocumentId': store.active_id,
    })


@api_bp.route('/documents', methods=['POST'])
def create_document():
    services = _services()
    data = _payload()
    doc_id = services.session.create(data.get('name'), data.get('content') or "")
    doc = services.store.get(doc_id)
    return jsonify(_with_warning(_document_json(doc, services.store.active_id))), 201


@api_bp.route('/documents/import', methods=['POST'])
def import_document():
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        abort(400, description="No file uploaded")
    services = _services()
    with tempfile.TemporaryDirectory() as tmp:
        target = Path(tmp) / Path(upload.filename).name
        upload.save(str(target))
        try:
            doc_id = services.session.import_markdown(target)
        except StorageError as e:
            abort(400, description=str(e))
    return jsonify(_with_warning(_document_json(services.store.get(doc_id), services.store.active_id))), 201


@api_bp.route('/documents/<doc_id>', methods=['GET'])
def get_document(doc_id):
    doc = _require(doc_id)
    return jsonify(_document_json(doc, _services().store.active_id))


@api_bp.route('/documents/<doc_id>', methods=['PATCH'])
def rename_document(doc_id):
    _require(doc_id)
    services = _services()
    services.session.rename(doc_id, _payload().get('name', ''))
    return jsonify(_with_warning(_document_json(services.store.get(doc_id), services.store.active_id)))


@api_bp.route('/documents/<doc_id>/content', methods=['PUT'])
def edit_document(doc_id):
    _require(doc_id)
    services = _services()
    data = _payload()
    if 'content' not in data or not isinstance(data['content'], str):
        abort(400, description="'content' must be a string")
    if services.store.active_id != doc_id:
        services.session.switch(doc_id)
    services.session.edit(data['content'])
    return jsonify({'id': doc_id, 'pendingSave': services.session.pending_save})


@api_bp.route('/documents/<doc_id>/clone', methods=['POST'])
def clone_document(doc_id):
    _require(doc_id)
    services = _services()
    new_id = services.session.clone(doc_id)
    return jsonify(_with_warning(_document_json(services.store.get(new_id), services.store.active_id))), 201


@api_bp.route('/documents/<doc_id>', methods=['DELETE'])
def delete_document(doc_id):
    _require(doc_id)
    services = _services()
    services.session.remove(doc_id)
    return jsonify(_with_warning({'activeDocumentId': services.store.active_id, 'count': len(services.store)}))


@api_bp.route('/documents/<doc_id>/activate', methods=['POST'])
def activate_document(doc_id):
    _require(doc_id)
    services = _services()
    services.session.switch(doc_id)
    return jsonify({'activeDocumentId': services.store.active_id})


# -------------------------------------------------------------------------
# Preview, preferences, export
# -------------------------------------------------------------------------

@api_bp.route('/preview', methods=['GET'])
def preview():
    tree = _services().session.preview
    return jsonify({
        'html': tree.to_html(),
        'toc': tree.toc,
        'passId': tree.pass_id,
        'resolved': tree.resolved,
    })


@api_bp.route('/preferences', methods=['GET', 'PUT'])
def preferences():
    store = _services().store
    if request.method == 'PUT':
        data = _payload()
        if 'sidebarOpen' in data:
            store.sidebar_open = bool(data['sidebarOpen'])
    return jsonify(_with_warning({'sidebarOpen': store.sidebar_open}))


@api_bp.route('/export', methods=['POST'])
def export():
    services = _services()
    settings = services.settings
    data = _payload()
    try:
        fmt = get_page_format(data.get('format', settings.page_format), data.get('margin', settings.margin_mm))
    except ValueError as e:
        abort(400, description=str(e))

    doc = services.store.active
    tree = services.session.preview
    if not tree.resolved:
        # Diagrams must be final before the tree is paginated.
        tree = services.pipeline.resolve(tree)
    pdf = services.engine.export_pdf(tree, fmt, data.get('strategy', settings.strategy), title=doc.name)
    return send_file(io.BytesIO(pdf), mimetype='application/pdf', as_attachment=True,
                     download_name=export_filename(doc.name))


@api_bp.route('/version', methods=['GET'])
def version():
    return jsonify({'version': __version__})


@api_bp.errorhandler(ExportInProgressError)
def export_in_progress(e):
    return jsonify({'error': str(e)}), 409


@api_bp.errorhandler(ExportError)
def export_failed(e):
    logger.error(f"Export failed: {e}")
    return jsonify({'error': "Failed to generate PDF. Please try again.", 'detail': str(e)}), 500


def _json_error(e):
    return jsonify({'error': e.description}), e.code


# -------------------------------------------------------------------------
# App factory
# -------------------------------------------------------------------------

def create_app(settings=None, storage=None, scheduler=None, diagram_renderer=None, rasterizer=None):
    settings = settings or Settings.from_env()
    storage = storage or LocalStorage(settings.store_path)

    store = DocumentStore.load(storage)
    pipeline = RenderPipeline(
        diagram_renderer=diagram_renderer or MermaidInkRenderer(settings.mermaid_url, settings.mermaid_timeout),
    )
    session = SessionController(
        store,
        scheduler=scheduler,
        pipeline=pipeline,
        autosave_delay=settings.autosave_delay,
        preview_delay=settings.preview_delay,
    )
    engine = ExportEngine(
        rasterizer=rasterizer,
        assembler=PdfAssembler(settings.image_format, settings.image_quality),
        scale=settings.raster_scale,
    )

    app = Flask(__name__)
    app.extensions['mdpress'] = Services(settings, store, session, pipeline, engine)
    app.register_blueprint(api_bp)
    for code in (400, 404):
        app.register_error_handler(code, _json_error)

    logger.info(f"mdpress {__version__}: {len(store)} document(s) loaded from {settings.store_path}")
    return app


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    app = create_app(settings)
    services = app.extensions['mdpress']
    atexit.register(services.session.close)
    atexit.register(services.pipeline.close)
    app.run(host=settings.host, port=settings.port)


if __name__ == '__main__':
    main()
