"""
Seed data: default notification templates, help articles and assistant
suggestions for ACC LMS. Idempotent: templates are upserted by name,
articles by slug, suggestions only into an empty table.
"""
from __future__ import annotations

import structlog
from typing import Any

from database.store_base import BaseStore
from models.schemas import ArticleStatus, KnowledgeArticle, Suggestion, UserRole
from templates.registry import TemplateRegistry

logger = structlog.get_logger()


TEMPLATES: list[dict[str, Any]] = [
    {
        "name": "welcome_email", "channel": "email",
        "subject": "Welcome to ACC LMS!",
        "body": "Hi {{firstName}}, welcome to our learning platform!",
        "variables": ["firstName"],
    },
    {
        "name": "course_enrollment", "channel": "email",
        "subject": "Course Enrollment Confirmed",
        "body": "You have successfully enrolled in {{courseTitle}}",
        "variables": ["courseTitle"],
    },
    {
        "name": "quiz_completed", "channel": "in_app",
        "body": "Quiz completed with score: {{score}}%",
        "variables": ["score"],
    },
    {
        "name": "course_completed", "channel": "email",
        "subject": "Congratulations! Course Completed",
        "body": "You have completed {{courseTitle}}. Download your certificate!",
        "variables": ["courseTitle"],
    },
    {
        "name": "new_lesson_available", "channel": "push",
        "subject": "{{courseTitle}}",
        "body": "New lesson available: {{lessonTitle}}",
        "variables": ["courseTitle", "lessonTitle"],
    },
    {
        "name": "agent_escalation", "channel": "in_app",
        "subject": "Conversación escalada",
        "body": (
            "La conversación {{conversationId}} necesita un agente humano. "
            "Motivo: {{reason}}. Usuario: {{userId}} ({{role}})."
        ),
        "variables": ["conversationId", "reason", "userId", "role"],
    },
]


SUGGESTIONS: list[tuple[str, str, UserRole, int]] = [
    ("¿Cómo puedo registrarme?", "register", UserRole.ANONYMOUS, 10),
    ("¿Qué cursos tienen disponibles?", "browse_courses", UserRole.ANONYMOUS, 9),
    ("¿Cuánto cuestan los cursos?", "pricing", UserRole.ANONYMOUS, 8),
    ("¿Cómo veo mi progreso?", "check_progress", UserRole.STUDENT, 10),
    ("¿Cómo descargo mi certificado?", "get_certificate", UserRole.STUDENT, 9),
    ("Tengo un problema con un video", "technical_issue", UserRole.STUDENT, 8),
    ("¿Cómo contacto al instructor?", "contact_instructor", UserRole.STUDENT, 7),
    ("¿Cómo creo un nuevo curso?", "create_course", UserRole.INSTRUCTOR, 10),
    ("¿Dónde veo mis ganancias?", "view_earnings", UserRole.INSTRUCTOR, 9),
    ("¿Cómo veo las estadísticas de mis cursos?", "view_analytics", UserRole.INSTRUCTOR, 8),
    ("Ver estado del sistema", "system_health", UserRole.ADMIN, 10),
    ("Ver reportes de la plataforma", "view_reports", UserRole.ADMIN, 9),
    ("Gestionar usuarios", "manage_users", UserRole.ADMIN, 8),
]


SYSTEM_AUTHOR = "00000000-0000-0000-0000-000000000000"

ARTICLES: list[dict[str, Any]] = [
    {
        "slug": "como-registrarse",
        "title": "¿Cómo me registro en la plataforma?",
        "content": (
            "# Registro en ACC LMS\n\n"
            "Para registrarte en nuestra plataforma, sigue estos pasos:\n\n"
            "1. Haz clic en el botón \"Registrarse\" en la esquina superior derecha\n"
            "2. Completa el formulario con tus datos\n"
            "3. Verifica tu correo electrónico\n"
            "4. ¡Listo! Ya puedes explorar nuestros cursos\n\n"
            "## Requisitos\n\n- Correo electrónico válido\n- Contraseña de al menos 8 caracteres\n\n"
            "## Problemas comunes\n\n"
            "- Si no recibes el correo de verificación, revisa tu carpeta de spam\n"
            "- Si el correo ya está registrado, prueba recuperar tu contraseña"
        ),
        "summary": "Guía paso a paso para registrarte en la plataforma",
        "category": "cuenta",
        "tags": ["registro", "cuenta", "inicio"],
        "keywords": ["registrarse", "crear cuenta", "nuevo usuario"],
        "intent_triggers": ["register", "signup", "crear_cuenta"],
        "target_roles": [UserRole.ANONYMOUS],
    },
    {
        "slug": "ver-progreso",
        "title": "¿Cómo veo mi progreso en un curso?",
        "content": (
            "# Ver tu progreso\n\nPuedes ver tu progreso de varias formas:\n\n"
            "## Desde el Dashboard\n\n1. Inicia sesión en tu cuenta\n2. Ve a \"Mi Dashboard\"\n"
            "3. Verás un resumen de todos tus cursos con el porcentaje completado\n\n"
            "## Desde un curso específico\n\n1. Entra al curso\n"
            "2. En la barra lateral verás las lecciones completadas con ✓\n"
            "3. En la parte superior verás la barra de progreso general\n\n"
            "## Detalles del progreso\n\nEl progreso se calcula basándose en:\n"
            "- Lecciones completadas\n- Quizzes aprobados\n- Tareas entregadas"
        ),
        "summary": "Cómo ver y entender tu progreso en los cursos",
        "category": "estudiante",
        "tags": ["progreso", "avance", "porcentaje"],
        "keywords": ["progreso", "avance", "completado", "porcentaje"],
        "intent_triggers": ["check_progress", "my_progress", "course_progress"],
        "target_roles": [UserRole.STUDENT],
    },
    {
        "slug": "obtener-certificado",
        "title": "¿Cómo obtengo mi certificado?",
        "content": (
            "# Certificados\n\n## Requisitos para obtener certificado\n\n"
            "Para obtener tu certificado necesitas:\n\n"
            "1. Completar el 100% del contenido del curso\n"
            "2. Aprobar todos los quizzes requeridos\n"
            "3. Entregar todas las tareas obligatorias\n\n"
            "## Descargar certificado\n\n1. Ve a \"Mis Certificados\" en tu perfil\n"
            "2. Busca el curso completado\n3. Haz clic en \"Descargar PDF\"\n\n"
            "## Verificar certificado\n\n"
            "Cada certificado tiene un código único que puede ser verificado en nuestra página de verificación."
        ),
        "summary": "Guía para obtener y descargar tu certificado de curso",
        "category": "estudiante",
        "tags": ["certificado", "diploma", "acreditación"],
        "keywords": ["certificado", "diploma", "descargar", "completado"],
        "intent_triggers": ["get_certificate", "download_certificate", "certificate"],
        "target_roles": [UserRole.STUDENT],
    },
    {
        "slug": "crear-curso-instructor",
        "title": "¿Cómo creo un curso como instructor?",
        "content": (
            "# Crear un curso\n\n## Pasos para crear tu curso\n\n"
            "1. Accede a tu Dashboard de Instructor\n2. Haz clic en \"Nuevo Curso\"\n"
            "3. Completa la información básica:\n   - Título del curso\n   - Descripción\n"
            "   - Categoría\n   - Nivel de dificultad\n"
            "4. Añade el contenido:\n   - Crea secciones/módulos\n   - Sube videos y materiales\n"
            "   - Crea quizzes\n5. Configura el precio\n6. Envía a revisión\n\n"
            "## Consejos\n\n- Usa videos de buena calidad\n"
            "- Estructura el contenido en secciones claras\n- Incluye recursos descargables\n"
            "- Responde las preguntas de los estudiantes"
        ),
        "summary": "Guía completa para crear tu primer curso en la plataforma",
        "category": "instructor",
        "tags": ["crear curso", "publicar", "instructor"],
        "keywords": ["crear curso", "nuevo curso", "publicar", "contenido"],
        "intent_triggers": ["create_course", "new_course", "publish_course"],
        "target_roles": [UserRole.INSTRUCTOR],
    },
]


async def seed_templates(store: BaseStore) -> int:
    return await TemplateRegistry(store).register_from_config(TEMPLATES)


async def seed_articles(store: BaseStore) -> int:
    created = 0
    for raw in ARTICLES:
        if await store.get_article_by_slug(raw["slug"]) is not None:
            continue
        await store.upsert_article(KnowledgeArticle(
            **raw, language="es", status=ArticleStatus.PUBLISHED, author_id=SYSTEM_AUTHOR,
        ))
        created += 1
    return created


async def seed_suggestions(store: BaseStore) -> int:
    if await store.list_suggestions(active_only=False):
        return 0
    for text, intent, role, priority in SUGGESTIONS:
        await store.add_suggestion(Suggestion(text=text, intent=intent, target_roles=[role], priority=priority))
    return len(SUGGESTIONS)


async def seed_all(store: BaseStore) -> dict[str, int]:
    counts = {
        "templates": await seed_templates(store),
        "articles": await seed_articles(store),
        "suggestions": await seed_suggestions(store),
    }
    logger.info("seed_complete", **counts)
    return counts
