"""User-facing Spanish texts of the diagnosis bot.

Texts use the Markdown subset both channels render (`*bold*`, `_italic_`).
"""

from datetime import datetime
from typing import Optional, Sequence

from tecrural_bot.config import settings

_SPANISH_MONTHS = ("ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic")

UNKNOWN_SENDER_WHATSAPP = (
    "No encontramos una cuenta de TEC Rural asociada a este número.\n\n"
    f"Regístrate en {settings.web_app_url} y agrega tu teléfono en tu perfil para usar el asistente."
)

UNKNOWN_SENDER_TELEGRAM = (
    "¡Hola! Tu cuenta de Telegram aún no está vinculada a TEC Rural.\n\n"
    f"1. Ingresa a {settings.web_app_url} y ve a *Configuración*\n"
    "2. Genera un código de vinculación\n"
    "3. Envíalo aquí así: /vincular CODIGO"
)

IDLE_GUIDANCE = (
    "Para crear un diagnóstico escribe /nuevo.\n\n"
    "También puedes enviar una foto con el nombre del cultivo en la descripción "
    "(ej: _tomate - manchas amarillas_).\n\n"
    "Escribe /ayuda para ver todos los comandos."
)

ASK_CROP = (
    "¡Excelente! Vamos a crear un nuevo diagnóstico.\n\n"
    "Por favor, indícame el nombre del cultivo que deseas analizar (ej: tomate, café, maíz)."
)

CROP_TOO_SHORT = "Por favor escribe el nombre del cultivo (al menos 2 letras), por ejemplo: tomate, café, maíz."

CROP_EXPECTED = "Primero necesito el nombre del cultivo (ej: tomate, café, maíz). Escríbelo como texto y luego te pediré la foto."

ASK_NOTES_TEMPLATE = (
    "Cultivo: *{crop_name}* 🌱\n\n"
    "Describe brevemente los síntomas que observas (manchas, color de las hojas, plagas...).\n\n"
    'Si prefieres no describirlos, escribe "omitir".'
)

ASK_NOTES_TEXT = 'Por favor describe los síntomas con texto o escribe "omitir" para continuar.'

ASK_PHOTO = (
    "📸 Ahora envía una foto clara de la planta.\n\n"
    "✓ Buena iluminación\n"
    "✓ Enfoca las áreas afectadas\n"
    "✓ Evita imágenes borrosas"
)

PHOTO_EXPECTED = "Necesito una foto de la planta para continuar. Envíala como imagen 📸"

ANALYZING = "🔍 Analizando tu imagen... Esto puede tardar hasta un minuto."

STILL_PROCESSING = "⏳ Todavía estoy analizando tu diagnóstico anterior. Por favor espera un momento."

OUT_OF_CREDITS = (
    "⚠️ No tienes créditos disponibles.\n\n"
    "Cada diagnóstico consume 1 crédito. Contacta al administrador para obtener más créditos."
)

GENERIC_RETRY = "Ocurrió un error procesando tu diagnóstico. Por favor intenta nuevamente en unos minutos con /nuevo."

UNKNOWN_STATE = "Ocurrió un problema con tu sesión. Empecemos de nuevo: escribe /nuevo para crear un diagnóstico."

NEEDS_BETTER_IMAGE_TEMPLATE = "😕 {reason}\n\nEnvía otra foto de la planta cuando estés listo."

DEFAULT_BETTER_IMAGE_REASON = (
    "No pudimos confirmar el diagnóstico. Envía otra foto más clara o con mejor iluminación."
)

HISTORY_EMPTY = "Aún no tienes diagnósticos registrados.\n\nEscribe /nuevo para crear tu primer diagnóstico."

START_MENU_TEXT = "¡Bienvenido a TEC Rural! ¿Qué deseas hacer?"

LINK_SUCCESS_TEMPLATE = (
    "✅ ¡Listo, {first_name}! Tu cuenta de Telegram quedó vinculada a TEC Rural.\n\n"
    "Escribe /nuevo para crear tu primer diagnóstico."
)

LINK_FAILURES = {
    "invalid_token": "El código no es válido o ya fue usado. Genera uno nuevo en la web de TEC Rural.",
    "expired_token": "El código expiró. Genera uno nuevo en la web de TEC Rural e inténtalo otra vez.",
    "already_linked": "Esta cuenta de Telegram ya está vinculada a otro usuario de TEC Rural.",
}

HELP = """🤖 *Asistente de Diagnóstico TEC Rural*

*Comandos disponibles:*
/nuevo - Iniciar nuevo diagnóstico
/historial - Ver tus últimos 5 diagnósticos
/creditos - Consultar créditos disponibles
/ayuda - Mostrar esta ayuda

*¿Cómo crear un diagnóstico?*
1. Envía /nuevo
2. Indica el nombre del cultivo
3. Describe los síntomas (o escribe "omitir")
4. Envía una foto clara de la planta
5. Recibe tu diagnóstico en segundos

*Atajo:* envía la foto con la descripción _cultivo - síntomas_ y el diagnóstico empieza de inmediato.

*Consejos para mejores resultados:*
✓ Toma fotos con buena iluminación
✓ Enfoca las áreas afectadas
✓ Envía imágenes nítidas (no borrosas)
✓ Describe síntomas con detalle"""

START_MENU_BUTTONS = {
    "inline_keyboard": [
        [{"text": "🆕 Nuevo Diagnóstico", "callback_data": "nuevo"}],
        [{"text": "📋 Historial", "callback_data": "historial"}],
        [{"text": "💳 Créditos", "callback_data": "creditos"}],
        [{"text": "❓ Ayuda", "callback_data": "ayuda"}],
    ]
}


def format_spanish_date(value: datetime) -> str:
    return f"{value.day} {_SPANISH_MONTHS[value.month - 1]} {value.year}"


def format_confidence(score: Optional[float]) -> str:
    if score is None:
        return "N/A"
    return f"{round(score * 100)}%"


def format_history(diagnoses: Sequence) -> str:
    """Numbered list of the latest diagnoses (crop, date, confidence)."""
    if not diagnoses:
        return HISTORY_EMPTY

    lines = ["📋 *Tus últimos diagnósticos:*", ""]
    for index, diagnosis in enumerate(diagnoses, start=1):
        lines.append(f"{index}. *{diagnosis.cultivo_name or 'Cultivo'}*")
        lines.append(f"   Fecha: {format_spanish_date(diagnosis.created_at)}")
        lines.append(f"   Confianza: {format_confidence(diagnosis.confidence_score)}")
        lines.append("")
    lines.append("Para crear un nuevo diagnóstico, escribe /nuevo")
    return "\n".join(lines)


def format_credits(credits: int) -> str:
    text = f"💳 *Créditos disponibles:* {credits}\n\n"
    if credits <= 0:
        return text + (
            "⚠️ No tienes créditos disponibles.\n\n"
            "Cada diagnóstico consume 1 crédito. Contacta al administrador para obtener más créditos."
        )
    if credits <= 2:
        return text + (
            "⚠️ Estás cerca de quedarte sin créditos.\n\n"
            "Cada diagnóstico consume 1 crédito. Considera solicitar más créditos pronto."
        )
    return text + "Cada diagnóstico consume 1 crédito.\n\nEscribe /nuevo para crear un diagnóstico."


def format_ask_notes(crop_name: str) -> str:
    return ASK_NOTES_TEMPLATE.format(crop_name=crop_name)


def format_needs_better_image(reason: Optional[str]) -> str:
    return NEEDS_BETTER_IMAGE_TEMPLATE.format(reason=reason or DEFAULT_BETTER_IMAGE_REASON)


def format_diagnosis_success(
    crop_name: str, confidence: Optional[float], report_markdown: str, remaining_credits: Optional[int]
) -> str:
    credits_text = remaining_credits if remaining_credits is not None else "N/A"
    return (
        f"✅ *Diagnóstico completado*\n\n"
        f"🌱 *Cultivo:* {crop_name}\n"
        f"📊 *Confianza:* {format_confidence(confidence)}\n\n"
        f"{report_markdown}\n\n"
        f"💳 Créditos restantes: {credits_text}\n\n"
        f"Escribe /nuevo para otro diagnóstico."
    )


def format_link_success(first_name: Optional[str]) -> str:
    return LINK_SUCCESS_TEMPLATE.format(first_name=first_name or "agricultor")


def format_notification_summary(crop_name: str, report_markdown: str) -> str:
    title = f"Diagnóstico TEC Rural – {crop_name or 'Cultivo'}"
    return f"{title}\n\n{report_markdown or 'Diagnóstico no disponible.'}"
