"""
Spreadsheet rendering for evaluation results.

Two layouts exist: "horizontal" (one data row per audit, one column per topic)
and "vertical" (one row per topic). Cell styling comes from `score_cell` and
`weight_cell`, which depend only on the topic definition and its score, so the
same catalog and result always produce the same workbook.
"""
import io
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.comments import Comment
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.xml.constants import ARC_CORE
from openpyxl.xml.functions import tostring

from .models import AuditContext, CriteriaCatalog, EvaluationResult, ScoredTopic, Topic, UnevaluatedTopic
from .utils import format_duration, format_timestamp, sanitize_filename

logger = logging.getLogger(__name__)

SHEET_TITLE = "Analisis"
NOTE_AUTHOR = "IA"
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

INFO_HEADERS = [
    "Folio",
    "Nombre del Ejecutivo",
    "ID Ejecutivo",
    "Analista de Calidad",
    "Fecha de Llamada",
    "Fecha de Evaluación",
    "Duración de la llamada",
    "Tipo de llamada",
]

NOT_APPLICABLE_TEXT = "n/a"
UNEVALUATED_TEXT = "Sin evaluar"
CRITICAL_TEXT = "Crítico"
PASS_DEFAULT_NOTE = "Cumplió correctamente"
FAIL_DEFAULT_NOTE = "No cumplió con el criterio"


@dataclass(frozen=True)
class CellStyle:
    fill: str
    font_color: str = "FF000000"
    bold: bool = False
    italic: bool = False
    size: int = 10


PASS = CellStyle(fill="FFC6EFCE", font_color="FF006100", bold=True)
FAIL = CellStyle(fill="FFFFC7CE", font_color="FF9C0006", bold=True)
PARTIAL = CellStyle(fill="FFFFEB9C", font_color="FF9C5700", bold=True)
NOT_APPLICABLE = CellStyle(fill="FFE0E0E0", font_color="FF666666")
UNEVALUATED = CellStyle(fill="FFF2F2F2", font_color="FF666666", italic=True, size=9)
WEIGHT = CellStyle(fill="FFCCCCCC", size=9)
WEIGHT_CRITICAL = CellStyle(fill="FFFF0000", font_color="FFFFFFFF", bold=True, size=9)
HEADER = CellStyle(fill="FFE7E6E6", bold=True, size=9)
BLOCK_HEADER = CellStyle(fill="FFD92027", font_color="FFFFFFFF", bold=True, size=11)
PLAIN = CellStyle(fill="FFFFFFFF", size=9)

_THIN = Side(style="thin", color="FF000000")
_BORDER = Border(left=_THIN, right=_THIN, top=_THIN, bottom=_THIN)
_MEDIUM = Side(style="medium", color="FF000000")
# scored cells stand out from unevaluated ones
_HIGHLIGHT_BORDER = Border(left=_MEDIUM, right=_MEDIUM, top=_MEDIUM, bottom=_MEDIUM)


@dataclass(frozen=True)
class CellContent:
    value: Any
    style: CellStyle
    note: Optional[str] = None
    highlight: bool = False


def _num(value: float) -> Any:
    return int(value) if float(value).is_integer() else value


def weight_cell(topic: Topic) -> CellContent:
    if not topic.applies:
        return CellContent(NOT_APPLICABLE_TEXT, NOT_APPLICABLE)
    if topic.max_points is None:
        return CellContent(CRITICAL_TEXT, WEIGHT_CRITICAL)
    return CellContent(_num(topic.max_points), WEIGHT_CRITICAL if topic.is_critical else WEIGHT)


def score_cell(
    topic: Topic,
    scored: Optional[ScoredTopic],
    unevaluated: Optional[UnevaluatedTopic] = None,
) -> CellContent:
    """Value, style and note for one topic's score cell."""
    if not topic.applies:
        return CellContent(NOT_APPLICABLE_TEXT, NOT_APPLICABLE)
    if scored is None:
        note = unevaluated.note if unevaluated else "No se encontró evidencia suficiente para evaluar este criterio"
        return CellContent(UNEVALUATED_TEXT, UNEVALUATED, note=note)

    if topic.max_points is None:
        ok = bool(scored.passed)
        value = f"{CRITICAL_TEXT}: {'Cumple' if ok else 'No cumple'}"
        default = PASS_DEFAULT_NOTE if ok else FAIL_DEFAULT_NOTE
        return CellContent(value, PASS if ok else FAIL, note=scored.justification or default, highlight=True)

    if scored.score <= 0:
        style, default = FAIL, FAIL_DEFAULT_NOTE
    elif scored.score >= topic.weight:
        style, default = PASS, PASS_DEFAULT_NOTE
    else:
        style, default = PARTIAL, PASS_DEFAULT_NOTE
    return CellContent(_num(scored.score), style, note=scored.justification or default, highlight=True)


def observations_text(result: EvaluationResult) -> str:
    text = result.narrative or ""
    if result.recommendations:
        text += "\n\nRecomendaciones:\n" + "\n".join(f"- {r}" for r in result.recommendations)
    if result.key_moments:
        text += "\n\nMomentos clave de la llamada:\n"
        text += "\n".join(f"[{format_timestamp(m.timestamp)}] {m.kind}: {m.description}" for m in result.key_moments)
    return text.strip()


def total_text(result: EvaluationResult) -> str:
    return f"{_num(result.total_score)} / {_num(result.max_possible_score)} ({result.percentage:.1f}%)"


def artifact_name(context: AuditContext, content_key: str) -> str:
    return f"auditoria_{sanitize_filename(context.executive_id) or 'sin_id'}_{content_key[:12]}.xlsx"


def _apply(cell, content: CellContent, align: str = "center", wrap: bool = True) -> None:
    s = content.style
    cell.value = content.value
    cell.fill = PatternFill(fill_type="solid", start_color=s.fill, end_color=s.fill)
    cell.font = Font(name="Calibri", size=s.size, bold=s.bold, italic=s.italic, color=s.font_color)
    cell.alignment = Alignment(horizontal=align, vertical="center", wrap_text=wrap)
    cell.border = _HIGHLIGHT_BORDER if content.highlight else _BORDER
    if content.note:
        note = Comment(content.note, NOTE_AUTHOR)
        note.width = 300
        note.height = 120
        cell.comment = note


def _info_values(context: AuditContext, generated_at: datetime) -> List[str]:
    return [
        "",
        context.executive_name,
        context.executive_id,
        context.analyst,
        context.call_date,
        generated_at.strftime("%d/%m/%Y"),
        format_duration(context.call_duration),
        context.call_type,
    ]


def _index_result(result: EvaluationResult) -> Tuple[Dict[str, ScoredTopic], Dict[str, UnevaluatedTopic]]:
    scored = {s.topic_id: s for s in result.scored_topics}
    unevaluated = {u.topic_id: u for u in result.unevaluated_topics}
    return scored, unevaluated


def _render_horizontal(ws, catalog: CriteriaCatalog, context: AuditContext,
                       result: EvaluationResult, generated_at: datetime) -> None:
    scored, unevaluated = _index_result(result)
    first_topic_col = len(INFO_HEADERS) + 1

    for col, header in enumerate(INFO_HEADERS, start=1):
        _apply(ws.cell(row=2, column=col), CellContent(header, HEADER))
        _apply(ws.cell(row=3, column=col), CellContent(None, PLAIN))
    for col, value in enumerate(_info_values(context, generated_at), start=1):
        _apply(ws.cell(row=4, column=col), CellContent(value or None, PLAIN), align="left")
    ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(INFO_HEADERS))
    _apply(ws.cell(row=1, column=1), CellContent("Información general", BLOCK_HEADER))

    col = first_topic_col
    for block in catalog.blocks:
        if not block.topics:
            continue
        start = col
        for topic in block.topics:
            _apply(ws.cell(row=2, column=col), CellContent(topic.label, HEADER))
            _apply(ws.cell(row=3, column=col), weight_cell(topic))
            _apply(ws.cell(row=4, column=col), score_cell(topic, scored.get(topic.id), unevaluated.get(topic.id)))
            ws.column_dimensions[get_column_letter(col)].width = 15
            col += 1
        if col - 1 > start:
            ws.merge_cells(start_row=1, start_column=start, end_row=1, end_column=col - 1)
        _apply(ws.cell(row=1, column=start), CellContent(block.name, BLOCK_HEADER))

    total_col, obs_col = col, col + 1
    _apply(ws.cell(row=2, column=total_col), CellContent("Calificación total", HEADER))
    _apply(ws.cell(row=3, column=total_col), CellContent(_num(result.max_possible_score), WEIGHT))
    _apply(ws.cell(row=4, column=total_col), CellContent(total_text(result), PLAIN))
    _apply(ws.cell(row=2, column=obs_col), CellContent("Observaciones generales", HEADER))
    _apply(ws.cell(row=3, column=obs_col), CellContent(None, PLAIN))
    obs = ws.cell(row=4, column=obs_col)
    _apply(obs, CellContent(observations_text(result) or None, PLAIN), align="left")
    obs.alignment = Alignment(horizontal="left", vertical="top", wrap_text=True)

    ws.row_dimensions[1].height = 25
    ws.row_dimensions[2].height = 80
    ws.row_dimensions[3].height = 20
    ws.row_dimensions[4].height = 60
    for i, width in enumerate((8, 30, 12, 25, 18, 18, 12, 40), start=1):
        ws.column_dimensions[get_column_letter(i)].width = width
    ws.column_dimensions[get_column_letter(total_col)].width = 18
    ws.column_dimensions[get_column_letter(obs_col)].width = 50


def _render_vertical(ws, catalog: CriteriaCatalog, context: AuditContext,
                     result: EvaluationResult, generated_at: datetime) -> None:
    scored, unevaluated = _index_result(result)

    row = 1
    for label, value in zip(INFO_HEADERS[1:], _info_values(context, generated_at)[1:]):
        _apply(ws.cell(row=row, column=1), CellContent(label, HEADER), align="left")
        ws.merge_cells(start_row=row, start_column=2, end_row=row, end_column=4)
        _apply(ws.cell(row=row, column=2), CellContent(value or None, PLAIN), align="left")
        row += 1
    row += 1

    for col, header in enumerate(("Bloque", "Tópico", "Ponderación", "Calificación"), start=1):
        _apply(ws.cell(row=row, column=col), CellContent(header, HEADER))
    row += 1

    for block in catalog.blocks:
        if not block.topics:
            continue
        start = row
        for topic in block.topics:
            _apply(ws.cell(row=row, column=2), CellContent(topic.label, PLAIN), align="left")
            _apply(ws.cell(row=row, column=3), weight_cell(topic))
            _apply(ws.cell(row=row, column=4), score_cell(topic, scored.get(topic.id), unevaluated.get(topic.id)))
            row += 1
        if row - 1 > start:
            ws.merge_cells(start_row=start, start_column=1, end_row=row - 1, end_column=1)
        _apply(ws.cell(row=start, column=1), CellContent(block.name, CellStyle(fill="FFFFFFFF", bold=True)))

    ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=3)
    _apply(ws.cell(row=row, column=1), CellContent("Calificación total", HEADER), align="right")
    _apply(ws.cell(row=row, column=4), CellContent(total_text(result), HEADER))
    row += 2

    ws.merge_cells(start_row=row, start_column=1, end_row=row, end_column=4)
    _apply(ws.cell(row=row, column=1), CellContent("Observaciones generales", BLOCK_HEADER))
    row += 1
    ws.merge_cells(start_row=row, start_column=1, end_row=row + 5, end_column=4)
    obs = ws.cell(row=row, column=1)
    _apply(obs, CellContent(observations_text(result) or None, PLAIN), align="left")
    obs.alignment = Alignment(horizontal="left", vertical="top", wrap_text=True)

    for i, width in enumerate((20, 60, 14, 22), start=1):
        ws.column_dimensions[get_column_letter(i)].width = width


def _normalize_zip(data: bytes, replace: Optional[Dict[str, bytes]] = None) -> bytes:
    """Rewrite the container with fixed entry timestamps so equal sheets give equal bytes."""
    replace = replace or {}
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(data)) as src, \
            zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as dst:
        for info in src.infolist():
            fixed = zipfile.ZipInfo(info.filename, date_time=ZIP_EPOCH)
            fixed.compress_type = zipfile.ZIP_DEFLATED
            fixed.external_attr = 0o600 << 16
            dst.writestr(fixed, replace.get(info.filename) or src.read(info.filename))
    return out.getvalue()


def render(
    layout: str,
    catalog: CriteriaCatalog,
    context: AuditContext,
    result: EvaluationResult,
    generated_at: datetime,
) -> bytes:
    """Render `result` as an .xlsx document and return its bytes."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE
    wb.properties.creator = "call-auditor"
    wb.properties.created = generated_at
    wb.properties.modified = generated_at

    if layout == "vertical":
        _render_vertical(ws, catalog, context, result, generated_at)
    elif layout == "horizontal":
        _render_horizontal(ws, catalog, context, result, generated_at)
    else:
        raise ValueError(f"unknown layout {layout!r}")

    buf = io.BytesIO()
    wb.save(buf)
    # save() stamps the modification time with the wall clock
    wb.properties.modified = generated_at
    core = tostring(wb.properties.to_tree())
    data = _normalize_zip(buf.getvalue(), {ARC_CORE: core})
    logger.info("Rendered %s report for %s (%d topics, %d bytes)",
                layout, catalog.name, catalog.topic_count(), len(data))
    return data
