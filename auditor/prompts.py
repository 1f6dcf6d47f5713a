from typing import Dict, List, Sequence

from .criteria import system_for_block
from .models import AuditContext, CriteriaCatalog, VerbalEvidenceLine, VisualEvidenceRecord
from .utils import format_mmss

VISION_SEED = 42
SCORING_SEED = 12345

VISION_PROMPT = """
Analiza esta captura de pantalla de sistema bancario con MÁXIMA PRECISIÓN y extrae todos los datos visibles.

PASO 1: identifica el sistema
- FALCON: casos de fraude, números de caso, transacciones marcadas, checkboxes, comentarios
- VCAS: estados de tarjeta (BLOCKED/BLKI), historial de bloqueos, números de cuenta
- VISION: pantalla ARQE/IBI con códigos de bloqueo (BLKT, BLKI, BNFC, BPT0)
- VRM: Visa Risk Manager, búsqueda de cuentas, validaciones
- BI: creación de folios, transacciones seleccionadas
- FRONT: registro de casos, codificación, comentarios de gestión
- OTRO: Excel, listas de transacciones, documentos

PASO 2: extrae cada campo visible (números de caso, estados, fechas, códigos de bloqueo,
checkboxes marcados, folios, montos, comercios). No inventes valores: usa null si no está visible.

PASO 3: marca los hallazgos importantes en "critical_fields":
has_case_number, has_blocked_status, has_folio_number, has_transactions,
has_fraud_checkboxes, has_block_codes.

Responde SOLO con JSON válido:
{
  "system": "FALCON|VCAS|VISION|VRM|BI|FRONT|OTRO",
  "confidence": 0.95,
  "data": {"campo": "valor"},
  "critical_fields": {"has_case_number": true},
  "findings": ["campo: valor exacto encontrado con contexto"]
}
""".strip()

SCORING_SYSTEM_PROMPT = """
Eres un auditor experto que evalúa con MÁXIMA PRECISIÓN basándose en EVIDENCIA CONCRETA.

Si la evidencia está presente en los datos estructurados, otorga puntos completos.
Si la evidencia NO está presente, 0 puntos.
Si la evidencia es parcial pero válida, puntos parciales.

Los campos críticos tienen prioridad absoluta (has_case_number, has_blocked_status,
has_folio_number, has_fraud_checkboxes, has_transactions).
Penaliza solo si la evidencia contradice el criterio. Combina evidencia visual y verbal.
Para tópicos críticos sin puntos ("n/a") responde "passed": true o false.
""".strip()

GENERIC_RULE = """
BUSCAR EN: evidencia visual del sistema indicado y la transcripción.
CRITERIO: evidencia clara y completa -> puntos completos; parcial -> proporcional; ausente o contradictoria -> 0.
""".strip()

TOPIC_RULES: Dict[str, str] = {
    "Cierre correcto del caso": """
BUSCAR EN: transcripción, palabras clave ["bloqueé", "bloqueada", "reposición", "nueva tarjeta", "5 días", "sucursal"].
CRITERIO: menciona bloqueo Y pasos siguientes -> completos; solo una parte -> parciales; sin cierre -> 0.
""".strip(),
    "Creación y llenado correcto del caso: (creación correcto del caso, selección de casillas, "
    "calificación de transacciones, comentarios correctos)": """
BUSCAR EN: FALCON data.case_number, data.checkboxes_checked (3+), data.transactions_marked, data.comment_text (>20 chars).
CRITERIO: todos presentes -> completos; faltan 1-2 -> parciales; sin case_number -> 0.
""".strip(),
    "Codificación correcta del caso": """
BUSCAR EN: FRONT data.case_code (debe contener "Fraude"), data.case_type.
CRITERIO: case_code contiene "Fraude" -> completos; otro valor o ausente -> 0.
""".strip(),
    "Llenado correcto del front (caso correcto, comentarios acorde a la gestión, tienen afectación/ sin afectación)": """
BUSCAR EN: FRONT data.comments_section, data.has_afectacion (true/false, no null), data.case_complete.
CRITERIO: sin evidencia -> 0.
""".strip(),
    "Bloquea tarjeta": """
BUSCAR EN: VCAS data.account_status = BLOCKED o block_types_marked; transcripción menciona bloqueo.
CRITERIO: account_status ACTIVE contradice el bloqueo -> 0.
""".strip(),
    "Crea el Folio Correctamente": """
BUSCAR EN: BI data.folio_number y data.folio_created = true.
CRITERIO: folio_created = false -> 0.
""".strip(),
    "Autentica correctamente": """
BUSCAR EN: transcripción: CallerID, OTP, código, preguntas de seguridad al inicio de la llamada.
""".strip(),
}

RESPONSE_FORMAT = """
Responde con JSON válido:
{
  "evaluations": [
    {"block": "Nombre del bloque", "topic": "Nombre del tópico", "score": 0,
     "max_score": 0, "passed": null, "justification": "EVIDENCIA CONCRETA ENCONTRADA: ..."}
  ],
  "observations": "Resumen basado en la evidencia",
  "recommendations": ["Recomendación específica"],
  "key_moments": [
    {"timestamp": "MM:SS", "event": "Evento", "description": "Descripción", "impact": "positive|negative|neutral"}
  ]
}
""".strip()


def rule_for_topic(label: str) -> str:
    return TOPIC_RULES.get(label, GENERIC_RULE)


def format_verbal_line(line: VerbalEvidenceLine) -> str:
    return f'[{format_mmss(line.timestamp_ms)}] {line.speaker_tag}: "{line.text}"'


def _format_visual(visual: Dict[str, List[VisualEvidenceRecord]]) -> str:
    if not visual:
        return "(sin evidencia visual)"
    sections = []
    for system in sorted(visual):
        parts = [f"SISTEMA: {system}"]
        for idx, rec in enumerate(visual[system], start=1):
            fields = "\n".join(f"    {k}: {v}" for k, v in rec.fields.items()) or "    (sin campos)"
            flags = "\n".join(f"    {k}: {str(v).lower()}" for k, v in rec.critical_flags.items())
            findings = "\n".join(f"  - {f}" for f in rec.findings)
            parts.append(
                f"Imagen {idx}: {rec.source_id}\n"
                f"DATOS EXTRAÍDOS:\n{fields}\n"
                f"CAMPOS CRÍTICOS:\n{flags or '    (ninguno marcado)'}\n"
                f"HALLAZGOS:\n{findings or '  (ninguno)'}"
            )
        sections.append("\n\n".join(parts))
    return "\n\n".join(sections)


def build_scoring_prompt(
    catalog: CriteriaCatalog,
    visual: Dict[str, List[VisualEvidenceRecord]],
    verbal: Sequence[VerbalEvidenceLine],
    context: AuditContext,
    verbal_window: int = 40,
) -> str:
    """
    One request covering every applicable topic. Non-applicable topics are
    left out of the ask; the caller accounts for them separately.
    """
    topic_sections = []
    n = 0
    for block, topic in catalog.applicable_topics():
        n += 1
        points = "n/a (crítico: responde passed true/false)" if topic.max_points is None else f"{topic.max_points:g}"
        topic_sections.append(
            f"{n}. {topic.label}\n"
            f"Bloque: {block.name}\n"
            f"Sistema: {system_for_block(block.name)}\n"
            f"Puntos máximos: {points}\n"
            f"Criticidad: {topic.criticality}\n"
            f"QUÉ BUSCAR: {topic.guidance}\n"
            f"{rule_for_topic(topic.label)}"
        )
    verbal_text = "\n".join(format_verbal_line(v) for v in list(verbal)[:verbal_window])
    return (
        "# AUDITORÍA CON EVIDENCIA ESTRUCTURADA\n\n"
        f"- Tipo: {context.call_type}\n"
        f"- Ejecutivo: {context.executive_name} (ID: {context.executive_id})\n"
        f"- Cliente: {context.client_id}\n"
        f"- Fecha: {context.call_date}\n\n"
        "## EVIDENCIA VISUAL\n\n"
        f"{_format_visual(visual)}\n\n"
        "## EVIDENCIA VERBAL (Transcripción)\n\n"
        f"{verbal_text or '(sin evidencia verbal)'}\n\n"
        "## TÓPICOS A EVALUAR\n\n"
        + "\n\n".join(topic_sections)
        + f"\n\nPuntaje máximo posible: {catalog.max_possible_score():g}\n\n"
        + RESPONSE_FORMAT
    )
