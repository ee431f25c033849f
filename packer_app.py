#!/usr/bin/env python3
"""
Web UI to rectify a photographed scrap board, preview its traced outline,
auto-fill the usable area with rectangles and export the result as SVG.

Endpoints:
 - GET  /                     -> HTML page with controls and live preview
 - POST /api/upload_image     -> store the photo (multipart field "image")
 - POST /api/process          -> rectify + binarize + trace, returns SVG preview
 - POST /api/autofill         -> start packing rectangles in the background
 - GET  /api/autofill/status  -> progress snapshot, and the result when done
 - POST /api/autofill/stop    -> cancel the running auto-fill
 - POST /api/add_shape        -> add a manual rounded rect or circle inside the boundary box
 - POST /api/clear_shapes     -> remove auto-fill and manual shapes, keep the boundary box
 - POST /api/export_svg       -> download the current SVG

Run:
  python packer_app.py --image ./images/scrap.jpg --host 127.0.0.1 --port 8000

Dependencies:
  pip install flask numpy opencv-python svgwrite
"""
from __future__ import annotations

import argparse
import asyncio
import base64
import io
import threading
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, jsonify, request, send_file
import cv2
import numpy as np
import svgwrite

import scrap_to_svg as core
from outline_merge import merge_outlines, outlines_to_mm, should_merge, suggestions_to_pixel_rects
from rect_packer import (
    CancellationToken,
    PackingConfig,
    PackingInputError,
    PackingListener,
    PlacementSuggestion,
    ProgressSnapshot,
    ScanState,
    prepare_scan,
)

app = Flask(__name__)


def svg_to_data_uri(svg: str) -> str:
    b64 = base64.b64encode(svg.encode('utf-8')).decode('ascii')
    return f"data:image/svg+xml;base64,{b64}"


def decode_image_bytes_to_bgr(data: bytes) -> Optional[np.ndarray]:
    arr = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def _parse_corners(raw: Any) -> Optional[List[Tuple[float, float]]]:
    if not raw:
        return None
    return [(float(p['x']), float(p['y'])) for p in raw]


def _parse_box(raw: Any) -> Optional[Tuple[int, int, int, int]]:
    if not isinstance(raw, dict):
        return None
    return (int(round(float(raw['x']))), int(round(float(raw['y']))),
            int(round(float(raw['width']))), int(round(float(raw['height']))))


def _style_from(data: Dict[str, Any]) -> core.ShapeStyle:
    d = core.ShapeStyle()
    return core.ShapeStyle(
        corner_radius_mm=max(0.0, float(data.get('corner_radius_mm', d.corner_radius_mm))),
        stroke_width_mm=float(data.get('stroke_width_mm', d.stroke_width_mm)),
        stroke_color=str(data.get('stroke_color', d.stroke_color)),
    )


def _config_from(data: Dict[str, Any]) -> PackingConfig:
    return PackingConfig.clamped(
        max_width_mm=float(data.get('max_width_mm', 100)),
        max_height_mm=float(data.get('max_height_mm', 50)),
        min_width_mm=float(data.get('min_width_mm', 30)),
        min_height_mm=float(data.get('min_height_mm', 20)),
        step_mm=max(1.0, float(data.get('step_mm', 1.0))),
        gap_mm=float(data.get('gap_mm', 0.0)),
        coverage_threshold=float(data.get('coverage_threshold', 0.9)),
        orientation=data.get('orientation', 'both'),
        max_shapes=int(data.get('max_shapes', 500)),
        progress_interval_rows=5,
        yield_after_rows=20,
    )


class AutofillJob(PackingListener):
    """One background packing run. The scan happens on its own thread and event loop.

    The job keeps the drawing it was started for; its result is only applied
    while that drawing is still the current one.
    """

    def __init__(self, scrap: core.ScrapMask, mask: np.ndarray, config: PackingConfig, style: core.ShapeStyle,
                 drawing: svgwrite.Drawing):
        self.scrap = scrap
        self.config = config
        self.style = style
        self.drawing = drawing
        self.token = CancellationToken()
        self.error: Optional[str] = None
        self.applied = False
        self._lock = threading.Lock()
        self._snapshot: Optional[ProgressSnapshot] = None
        self._suggestions: List[PlacementSuggestion] = []
        # Raises PackingInputError before any thread is started
        self.scanner = prepare_scan(mask, scrap.width_px, scrap.height_px, scrap.width_mm, scrap.height_mm,
                                    config, listener=self, token=self.token)
        self.thread = threading.Thread(target=self._run, name='autofill', daemon=True)

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def on_rectangle_added(self, suggestion: PlacementSuggestion) -> None:
        with self._lock:
            self._suggestions.append(suggestion)

    def _run(self) -> None:
        try:
            asyncio.run(self.scanner.run())
        except Exception as exc:  # noqa: BLE001
            app.logger.exception('Auto-fill failed')
            self.error = str(exc)

    def start(self) -> None:
        self.thread.start()

    @property
    def running(self) -> bool:
        return self.thread.is_alive()

    @property
    def suggestions(self) -> List[PlacementSuggestion]:
        with self._lock:
            return list(self._suggestions)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            snap = self._snapshot.to_dict() if self._snapshot is not None else None
            count = len(self._suggestions)
        return {
            'running': self.running,
            'state': self.scanner.state.value,
            'progress': snap,
            'suggestions': count,
            'error': self.error,
        }


# Guards the check-then-set of the JOB slot and every DRAWING/SVG update
_state_lock = threading.Lock()


def _publish(dwg: svgwrite.Drawing) -> str:
    app.config['DRAWING'] = dwg
    app.config['SVG'] = dwg.tostring()
    return app.config['SVG']


def _drop_job() -> None:
    """Cancel and forget the current job. Caller holds _state_lock."""
    job: Optional[AutofillJob] = app.config.pop('JOB', None)
    if job is not None and job.running:
        job.token.cancel()
        app.logger.info('Cancelled auto-fill for a replaced board')


def _finish_job(job: AutofillJob) -> Dict[str, Any]:
    """Apply a finished job's result to its drawing once. Caller holds _state_lock."""
    resp: Dict[str, Any] = {}
    state = job.scanner.state
    if state is ScanState.CANCELLED:
        resp['message'] = 'Auto-fill cancelled'
        return resp
    if state is not ScanState.COMPLETED:
        resp['message'] = f'Auto-fill failed: {job.error}'
        return resp
    suggestions = job.suggestions
    if not suggestions:
        resp['message'] = 'No usable white area found for the requested sizes'
        return resp
    if app.config.get('DRAWING') is not job.drawing:
        resp['message'] = 'Auto-fill discarded: the board changed'
        return resp
    if not job.applied:
        core.add_suggestions(job.drawing, job.scrap, suggestions, job.style, job.config.gap_mm)
        _publish(job.drawing)
        job.applied = True
    resp['message'] = f'Added {len(suggestions)} rectangles'
    resp['rectangles'] = [s.to_dict() for s in suggestions]
    if should_merge(job.config.gap_mm, job.style.corner_radius_mm):
        scrap = job.scrap
        rects = suggestions_to_pixel_rects(suggestions, scrap.px_per_mm_x, scrap.px_per_mm_y)
        resp['outlines_mm'] = outlines_to_mm(merge_outlines(rects), scrap.px_per_mm_x, scrap.px_per_mm_y)
    resp['svg_data_uri'] = svg_to_data_uri(app.config['SVG'])
    return resp


@app.route('/')
def index():
    return INDEX_HTML


@app.post('/api/upload_image')
def api_upload_image():
    f = request.files.get('image')
    if f is None:
        return jsonify({'error': 'No file part named "image"'}), 400
    data = f.read()
    if not data:
        return jsonify({'error': 'Empty file'}), 400
    img = decode_image_bytes_to_bgr(data)
    if img is None:
        return jsonify({'error': 'Unsupported image format'}), 400
    with _state_lock:
        _drop_job()
        app.config['IMAGE'] = img
        for key in ('SCRAP', 'DRAWING', 'SVG'):
            app.config.pop(key, None)
    return jsonify({'ok': True, 'shape': [int(img.shape[0]), int(img.shape[1])]}), 200


@app.post('/api/process')
def api_process():
    data = request.json or {}
    img = app.config.get('IMAGE')
    if img is None:
        return jsonify({'error': 'No image loaded. Upload an image first.'}), 400
    try:
        s = core.Settings(
            threshold=int(data.get('threshold', -1)),
            width_mm=float(data.get('width_mm', core.BOARD_WIDTH_MM)),
            height_mm=float(data.get('height_mm', core.BOARD_HEIGHT_MM)),
            corners=_parse_corners(data.get('corners')),
            auto_corners=bool(data.get('auto_corners', False)),
        )
        if s.width_mm <= 0 or s.height_mm <= 0:
            return jsonify({'error': 'Board size must be positive'}), 400
        scrap = core.build_scrap_mask(img, s)
    except (core.ImageProcessingError, KeyError, TypeError, ValueError) as e:
        return jsonify({'error': f'Processing failed: {e}'}), 400

    contours = core.find_and_approx_contours(scrap.mask, s.epsilon_frac, s.min_area)
    with _state_lock:
        _drop_job()
        app.config['SCRAP'] = scrap
        svg = _publish(core.new_drawing(scrap, contours))
    return jsonify({
        'svg_data_uri': svg_to_data_uri(svg),
        'view_width': scrap.width_px,
        'view_height': scrap.height_px,
        'width_mm': scrap.width_mm,
        'height_mm': scrap.height_mm,
        'contour_count': len(contours),
    })


@app.post('/api/autofill')
def api_autofill():
    data = request.json or {}
    with _state_lock:
        scrap: Optional[core.ScrapMask] = app.config.get('SCRAP')
        dwg: Optional[svgwrite.Drawing] = app.config.get('DRAWING')
        if scrap is None or dwg is None:
            return jsonify({'error': 'Process an image before auto-filling'}), 400
        current: Optional[AutofillJob] = app.config.get('JOB')
        if current is not None and current.running:
            return jsonify({'error': 'Auto-fill already running'}), 409
        mask = scrap.mask
        try:
            box = _parse_box(data.get('boundary_box'))
            if box is not None:
                mask = core.restrict_mask_to_box(mask, box)
            job = AutofillJob(scrap, mask, _config_from(data), _style_from(data), dwg)
        except (PackingInputError, KeyError, TypeError, ValueError) as e:
            return jsonify({'error': f'Auto-fill failed: {e}'}), 400
        if box is not None:
            core.set_boundary_box(dwg, scrap, box)
            _publish(dwg)
        app.config['JOB'] = job
        job.start()
    app.logger.info('Auto-fill started on %dx%d mask', scrap.width_px, scrap.height_px)
    return jsonify({'ok': True}), 202


@app.get('/api/autofill/status')
def api_autofill_status():
    with _state_lock:
        job: Optional[AutofillJob] = app.config.get('JOB')
        if job is None:
            return jsonify({'error': 'No auto-fill has been started'}), 404
        resp = job.status()
        if not resp['running']:
            resp.update(_finish_job(job))
    return jsonify(resp)


@app.post('/api/autofill/stop')
def api_autofill_stop():
    job: Optional[AutofillJob] = app.config.get('JOB')
    if job is None or not job.running:
        return jsonify({'ok': True, 'running': False})
    job.token.cancel()
    return jsonify({'ok': True, 'running': True, 'message': 'Stopping auto-fill...'})


@app.post('/api/add_shape')
def api_add_shape():
    data = request.json or {}
    with _state_lock:
        scrap: Optional[core.ScrapMask] = app.config.get('SCRAP')
        dwg: Optional[svgwrite.Drawing] = app.config.get('DRAWING')
        if scrap is None or dwg is None:
            return jsonify({'error': 'Process an image before adding shapes'}), 400
        try:
            box = _parse_box(data.get('boundary_box'))
            if box is None:
                return jsonify({'error': 'Draw a boundary box first'}), 400
            core.add_manual_shape(dwg, scrap, box, str(data.get('shape', 'roundedRect')), _style_from(data),
                                  float(data.get('padding_mm', 12.0)))
        except (KeyError, TypeError, ValueError) as e:
            return jsonify({'error': f'Adding shape failed: {e}'}), 400
        core.set_boundary_box(dwg, scrap, box)
        svg = _publish(dwg)
    return jsonify({'message': 'Shape added', 'svg_data_uri': svg_to_data_uri(svg)})


@app.post('/api/clear_shapes')
def api_clear_shapes():
    with _state_lock:
        dwg: Optional[svgwrite.Drawing] = app.config.get('DRAWING')
        if dwg is None:
            return jsonify({'error': 'Nothing to clear. Process an image first.'}), 400
        removed = core.clear_extra_shapes(dwg)
        svg = _publish(dwg)
    return jsonify({'message': 'Shapes cleared', 'removed': removed, 'svg_data_uri': svg_to_data_uri(svg)})


@app.post('/api/export_svg')
def api_export_svg():
    svg = app.config.get('SVG')
    if not svg:
        return jsonify({'error': 'Nothing to export. Process an image first.'}), 400
    buf = io.BytesIO(svg.encode('utf-8'))
    return send_file(buf, mimetype='image/svg+xml', as_attachment=True, download_name='scrap_cutouts.svg')


def main():
    ap = argparse.ArgumentParser(description='Run the scrap auto-fill web app')
    ap.add_argument('--image', '-i', required=False, default=None, help='Path to a scrap board photo (optional)')
    ap.add_argument('--host', default='127.0.0.1')
    ap.add_argument('--port', type=int, default=8000)
    ap.add_argument('--debug', action='store_true')
    args = ap.parse_args()

    if args.image:
        img = cv2.imread(args.image, cv2.IMREAD_COLOR)
        if img is None:
            raise SystemExit(f'Failed to read image: {args.image}')
        app.config['IMAGE'] = img
        app.logger.info('Loaded %s', args.image)
    app.run(host=args.host, port=args.port, debug=args.debug)


INDEX_HTML = """
<!DOCTYPE html>
<meta charset="utf-8">
<title>Scrap Auto-Fill</title>
<style>
  body{font-family:system-ui, -apple-system, Segoe UI, Roboto, sans-serif; margin:16px;}
  .grid{display:grid; grid-template-columns: 360px 1fr; gap:16px;}
  fieldset{border:1px solid #ddd; border-radius:8px; padding:12px; margin-bottom:12px;}
  legend{font-weight:600;}
  .row{display:flex; align-items:center; gap:8px; margin:6px 0;}
  label{width:140px; font-size:13px; color:#333;}
  input[type=number]{width:90px;}
  .panel{border:1px solid #ddd; border-radius:8px; padding:8px;}
  img{max-width:100%; height:auto;}
  .btns{display:flex; gap:8px; margin-top:8px;}
  .stat{font-size:12px; color:#444;}
  progress{width:100%;}
</style>
<div class="grid">
  <div>
    <fieldset>
      <legend>Photo</legend>
      <input type="file" id="file" accept="image/*">
      <div class="row"><label>Board width (mm)</label><input type="number" id="width_mm" value="525"></div>
      <div class="row"><label>Board height (mm)</label><input type="number" id="height_mm" value="645"></div>
      <div class="row"><label>Threshold (-1 = auto)</label><input type="number" id="threshold" value="-1"></div>
      <div class="row"><label>Red tape corners</label><input type="checkbox" id="auto_corners" checked></div>
      <div class="btns"><button id="process">Process</button></div>
    </fieldset>
    <fieldset>
      <legend>Shapes</legend>
      <div class="row"><label>Box x, y (px)</label><input type="number" id="box_x" value="0"><input type="number" id="box_y" value="0"></div>
      <div class="row"><label>Box w, h (px, 0 = none)</label><input type="number" id="box_w" value="0"><input type="number" id="box_h" value="0"></div>
      <div class="row"><label>Padding (mm)</label><input type="number" id="padding_mm" value="12" step="0.5"></div>
      <div class="row"><label>Shape</label><select id="shape"><option value="roundedRect">Rounded rect</option><option value="circle">Circle</option></select></div>
      <div class="btns"><button id="add_shape">Add shape</button><button id="clear_shapes">Clear shapes</button></div>
    </fieldset>
    <fieldset>
      <legend>Auto-fill</legend>
      <div class="row"><label>Max W x H (mm)</label><input type="number" id="max_width_mm" value="100"><input type="number" id="max_height_mm" value="50"></div>
      <div class="row"><label>Min W x H (mm)</label><input type="number" id="min_width_mm" value="30"><input type="number" id="min_height_mm" value="20"></div>
      <div class="row"><label>Step (mm)</label><input type="number" id="step_mm" value="1" step="0.5"></div>
      <div class="row"><label>Gap (mm)</label><input type="number" id="gap_mm" value="0" step="0.5"></div>
      <div class="row"><label>Corner radius (mm)</label><input type="number" id="corner_radius_mm" value="2" step="0.5"></div>
      <div class="btns"><button id="fill">Auto-fill</button><button id="stop">Stop</button><button id="export">Export SVG</button></div>
      <progress id="bar" max="1" value="0"></progress>
      <div class="stat" id="msg"></div>
    </fieldset>
  </div>
  <div class="panel"><img id="preview" alt=""></div>
</div>
<script>
const $ = (id) => document.getElementById(id);
const num = (id) => parseFloat($(id).value);
function say(t){ $('msg').textContent = t || ''; }
async function post(url, body){
  const r = await fetch(url, {method:'POST', headers:{'Content-Type':'application/json'}, body: JSON.stringify(body || {})});
  return [r, await r.json()];
}
$('file').addEventListener('change', async (e)=>{
  const f = e.target.files[0]; if(!f) return;
  const fd = new FormData(); fd.append('image', f);
  const r = await fetch('/api/upload_image', {method:'POST', body: fd});
  const j = await r.json(); say(j.error || 'Image loaded');
});
$('process').addEventListener('click', async ()=>{
  const [r, j] = await post('/api/process', {
    width_mm: num('width_mm'), height_mm: num('height_mm'),
    threshold: num('threshold'), auto_corners: $('auto_corners').checked,
  });
  if(j.error){ say(j.error); return; }
  $('preview').src = j.svg_data_uri; say(j.contour_count + ' outlines traced');
});
function box(){
  if(!(num('box_w') > 0 && num('box_h') > 0)) return null;
  return {x: num('box_x'), y: num('box_y'), width: num('box_w'), height: num('box_h')};
}
$('add_shape').addEventListener('click', async ()=>{
  const [r, j] = await post('/api/add_shape', {
    boundary_box: box(), shape: $('shape').value, padding_mm: num('padding_mm'),
    corner_radius_mm: num('corner_radius_mm'),
  });
  say(j.message || j.error); if(j.svg_data_uri) $('preview').src = j.svg_data_uri;
});
$('clear_shapes').addEventListener('click', async ()=>{
  const [r, j] = await post('/api/clear_shapes');
  say(j.message || j.error); if(j.svg_data_uri) $('preview').src = j.svg_data_uri;
});
async function poll(){
  const r = await fetch('/api/autofill/status'); const j = await r.json();
  if(j.progress){ $('bar').value = j.progress.progress; say('Rows ' + j.progress.processed_rows + '/' + j.progress.total_rows + ', ' + j.suggestions + ' rectangles'); }
  if(j.running){ setTimeout(poll, 250); return; }
  say(j.message || j.error); if(j.svg_data_uri) $('preview').src = j.svg_data_uri;
}
$('fill').addEventListener('click', async ()=>{
  const body = {};
  ['max_width_mm','max_height_mm','min_width_mm','min_height_mm','step_mm','gap_mm','corner_radius_mm'].forEach(k => body[k] = num(k));
  body.boundary_box = box();
  const [r, j] = await post('/api/autofill', body);
  if(j.error){ say(j.error); return; }
  say('Filling...'); poll();
});
$('stop').addEventListener('click', async ()=>{ const [r, j] = await post('/api/autofill/stop'); if(j.message) say(j.message); });
$('export').addEventListener('click', async ()=>{
  const r = await fetch('/api/export_svg', {method:'POST'});
  if(!r.ok){ const j = await r.json(); say(j.error); return; }
  const url = URL.createObjectURL(await r.blob());
  const a = document.createElement('a'); a.href = url; a.download = 'scrap_cutouts.svg'; a.click();
});
</script>
"""


if __name__ == '__main__':
    main()
