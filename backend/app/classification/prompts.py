"""
Prompt templates for every reasoning call made by the classifier adapter.

Templates are plain str.format() strings: literal JSON braces are doubled.
All prompts ask for a single JSON object and nothing else; the payload
shapes they describe are mirrored by the pydantic models in
app/schemas/analysis.py.
"""

from __future__ import annotations

from typing import Final, Iterable, Sequence

from app.schemas.analysis import FieldWithValue

CLASSIFY_TEXT_LIMIT: Final[int] = 5_000
EXTRACT_TEXT_LIMIT:  Final[int] = 8_000

SYSTEM_PROMPT: Final[str] = (
    "Eres un sistema experto en análisis documental. "
    "Respondes siempre con un único objeto JSON válido, sin texto adicional."
)

# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_CLASSIFY_TEMPLATE: Final[str] = """\
Eres un experto clasificador de documentos. Analiza el siguiente texto extraído de un documento y determina a qué tipo de documento pertenece.

**TIPOS DE DOCUMENTO DISPONIBLES:**
{types}

**TEXTO DEL DOCUMENTO:**
{text}

**INSTRUCCIONES:**
1. Analiza el contenido del documento
2. Compara con los tipos disponibles
3. Si el documento coincide con algún tipo (con confianza >= {threshold}), responde con ese tipo
4. Si NO coincide con ningún tipo o la confianza es baja, propone un nuevo tipo

**FORMATO DE RESPUESTA (JSON):**
{{
  "matchedTypeId": "id del tipo" | null,
  "matchedTypeName": "nombre del tipo" | "Otros",
  "confidence": número entre 0 y 1,
  "isOthers": true | false,
  "inferredType": "nombre sugerido para el nuevo tipo (solo si isOthers=true)",
  "suggestedFields": [
    {{
      "name": "nombre_campo",
      "type": "string|number|date|boolean|array",
      "label": "Etiqueta Campo",
      "required": true | false,
      "description": "Descripción del campo"
    }}
  ],
  "reasoning": "Breve explicación de tu decisión"
}}

Responde SOLO con el JSON, sin texto adicional."""


# ---------------------------------------------------------------------------
# Field extraction against a known schema
# ---------------------------------------------------------------------------

_EXTRACT_TEMPLATE: Final[str] = """\
Eres un experto en extracción de datos de documentos. Analiza {source} y extrae:
1. Un RESUMEN breve del documento EN ESPAÑOL (1-2 líneas)
2. Los valores de los campos solicitados

**TIPO DE DOCUMENTO:** {type_name}
**DESCRIPCIÓN:** {type_description}

**CAMPOS A EXTRAER:**
{fields}
{text_block}
**INSTRUCCIONES:**
1. Extrae SOLO los campos solicitados, conservando su "name"
2. Respeta los tipos de datos especificados
3. Si un campo no se encuentra en el documento, usa null como valor
4. Para fechas, usa formato ISO 8601 (YYYY-MM-DD)
5. Para montos y números, extrae solo el valor numérico sin símbolos ($, CLP, etc.)
{layout_hints}
**FORMATO DE RESPUESTA (JSON):**
{{
  "summary": "Breve resumen del documento EN ESPAÑOL (1-2 líneas)",
  "fields": [
    {{"name": "...", "type": "...", "label": "...", "required": true | false, "description": "...", "value": ...}}
  ]
}}

**IMPORTANTE:** El resumen DEBE estar en español, independientemente del idioma del documento original.

Responde SOLO con el JSON, sin texto adicional ni explicaciones."""


_LAYOUT_HINTS: Final[str] = """
**Observa visualmente el documento:**
- Analiza el LAYOUT completo (columnas, tablas, secciones)
- Si ves campos con "Etiqueta:" seguido de un valor, extrae el valor
- Busca valores en posiciones cercanas a las etiquetas (derecha, abajo)
- Ignora etiquetas decorativas, solo captura datos reales
"""


# ---------------------------------------------------------------------------
# Open inference for unclassified documents
# ---------------------------------------------------------------------------

_INFER_TEMPLATE: Final[str] = """\
Eres un experto analista de documentos. Analiza {source} y determina:
1. QUÉ TIPO de documento es (ej: "Certificado Médico", "Recibo", "Contrato")
2. Un RESUMEN breve del documento EN ESPAÑOL (1-2 líneas)
3. Los CAMPOS CLAVE más importantes que se encuentran en el documento
{text_block}
**INSTRUCCIONES:**
1. Identifica el tipo de documento basándote en su contenido y estructura
2. Extrae entre 3 y 20 campos clave (los más importantes del documento)
3. Para cada campo, proporciona:
   - **name**: nombre técnico en snake_case (ej: "institution_name")
   - **type**: string, number, date, email, phone, currency, boolean o array
   - **label**: etiqueta legible en español (ej: "Nombre de la Institución")
   - **required**: si el campo es fundamental para el documento
   - **description**: breve descripción del propósito del campo (máx 100 caracteres)
   - **value**: valor real extraído del documento
{layout_hints}
**FORMATO DE RESPUESTA (JSON):**
{{
  "inferred_type": "Nombre del tipo de documento identificado",
  "summary": "Breve resumen del contenido del documento EN ESPAÑOL (1-2 líneas)",
  "key_fields": [
    {{"name": "nombre_campo", "type": "string", "label": "Etiqueta del Campo", "required": true, "description": "...", "value": "valor extraído"}}
  ]
}}

Responde SOLO con el JSON, sin texto adicional."""


# ---------------------------------------------------------------------------
# Homologation of new type labels
# ---------------------------------------------------------------------------

_HOMOLOGATE_TEMPLATE: Final[str] = """\
Eres un experto en clasificación de documentos.

Tengo estos tipos de documentos NUEVOS identificados:
{labels}

**TAREA:** Agrupa los tipos que son SEMÁNTICAMENTE EQUIVALENTES (el mismo documento con nombres diferentes).

**EJEMPLOS DE EQUIVALENCIAS:**
- "Orden de Compra" ≈ "Orden Compra" ≈ "Purchase Order" → MISMO TIPO
- "Factura" ≈ "Invoice" ≈ "Boleta de Venta" → MISMO TIPO

**EJEMPLOS DE NO EQUIVALENCIAS:**
- "Orden de Compra" ≠ "Factura" → TIPOS DIFERENTES
- "Contrato de Trabajo" ≠ "Certificado Laboral" → TIPOS DIFERENTES

**INSTRUCCIONES:**
1. Agrupa solo tipos que son REALMENTE el mismo documento
2. Para cada grupo, elige el nombre MÁS CLARO Y ESPECÍFICO en español
3. Incluye en "variants" los nombres EXACTOS de la lista que se fusionan
4. SÉ CONSERVADOR: un tipo sin equivalente real no aparece en ningún grupo

**FORMATO DE RESPUESTA (JSON):**
{{
  "merges": [
    {{"canonical_name": "Nombre definitivo elegido", "variants": ["nombre1", "nombre2"]}}
  ]
}}

Si NO hay tipos equivalentes, responde: {{"merges": []}}

Responde SOLO con el JSON, sin texto adicional."""


# ---------------------------------------------------------------------------
# Field consolidation
# ---------------------------------------------------------------------------

_CONSOLIDATE_TEMPLATE: Final[str] = """\
Eres un experto en diseño de schemas de datos.

Tengo {count} documentos tipo "{type_name}" con estos campos extraídos:

{documents}

**TAREA:** Consolida estos campos en UN SOLO SCHEMA definitivo para el tipo "{type_name}".

**INSTRUCCIONES:**
1. Identifica campos equivalentes (mismo concepto, nombres diferentes)
   - Ejemplo: "numero_orden", "order_number", "nro_orden" → MISMO CAMPO
2. Elige el mejor nombre (snake_case, español, descriptivo)
3. Elige el tipo más apropiado: string, number, date, boolean, email, phone, currency o array
4. Genera label y descripción útiles en español
5. En "variants" lista TODOS los nombres originales (exactos) que se fusionaron en el campo
6. Limita a máximo 20 campos, ordenados por importancia

**FORMATO DE RESPUESTA (JSON):**
{{
  "typeDescription": "Descripción breve del tipo de documento (1-2 líneas)",
  "consolidatedFields": [
    {{"name": "nombre_campo", "type": "string", "label": "Etiqueta en español", "description": "...", "variants": ["nombre_original_1", "nombre_original_2"]}}
  ]
}}

Responde SOLO con el JSON, sin texto adicional ni explicaciones."""


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------

def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + " ...(truncado)"


def _describe_schema_fields(fields: Iterable[dict]) -> str:
    lines = []
    for f in fields:
        line = (
            f"- {f.get('label') or f.get('name')} ({f.get('name')}): tipo {f.get('type', 'string')}, "
            f"{'obligatorio' if f.get('required') else 'opcional'}"
        )
        if f.get("description"):
            line += f" - {f['description']}"
        lines.append(line)
    return "\n".join(lines)


def render_classify(text: str, candidates: Sequence, threshold: float) -> str:
    """candidates: DocumentType rows (id, name, description, fields)."""
    blocks = []
    for index, dt in enumerate(candidates, start=1):
        fields_str = ", ".join(f"{f.get('label')} ({f.get('type')})" for f in dt.fields)
        blocks.append(
            f'{index}. [id={dt.id}] "{dt.name}": {dt.description or "Sin descripción"}\n'
            f"   Campos: {fields_str}"
        )
    return _CLASSIFY_TEMPLATE.format(
        types="\n\n".join(blocks),
        text=_truncate(text, CLASSIFY_TEXT_LIMIT),
        threshold=threshold,
    )


def render_extract(type_name: str, type_description: str | None, fields: Iterable[dict], text: str | None = None) -> str:
    """Vision variant when text is None; text variant otherwise."""
    if text is None:
        source, text_block, hints = "esta imagen/PDF", "", _LAYOUT_HINTS
    else:
        source = "el siguiente texto"
        text_block = f"\n**TEXTO DEL DOCUMENTO:**\n{_truncate(text, EXTRACT_TEXT_LIMIT)}\n"
        hints = ""
    return _EXTRACT_TEMPLATE.format(
        source=source,
        type_name=type_name,
        type_description=type_description or "Sin descripción",
        fields=_describe_schema_fields(fields),
        text_block=text_block,
        layout_hints=hints,
    )


def render_infer(text: str | None = None) -> str:
    if text is None:
        return _INFER_TEMPLATE.format(source="esta imagen/PDF", text_block="", layout_hints=_LAYOUT_HINTS)
    return _INFER_TEMPLATE.format(
        source="el siguiente texto",
        text_block=f"\n**TEXTO DEL DOCUMENTO:**\n{_truncate(text, EXTRACT_TEXT_LIMIT)}\n",
        layout_hints="",
    )


def render_homologate(labels: Sequence[str]) -> str:
    return _HOMOLOGATE_TEMPLATE.format(
        labels="\n".join(f'{i}. "{label}"' for i, label in enumerate(labels, start=1)),
    )


def render_consolidate(type_name: str, per_document_fields: Sequence[Sequence[FieldWithValue]]) -> str:
    blocks = []
    for index, fields in enumerate(per_document_fields, start=1):
        listed = "\n".join(f"  - {f.name} ({f.type}): {f.label or f.name}" for f in fields) or "  (sin campos)"
        blocks.append(f"Documento {index}:\n{listed}")
    return _CONSOLIDATE_TEMPLATE.format(
        count=len(per_document_fields),
        type_name=type_name,
        documents="\n\n".join(blocks),
    )
