from grc_asignaciones.models import (
    db, Asignacion, Respuesta, Pregunta, Dimension, get_now,
    ESTADO_PENDIENTE, ESTADO_EN_PROGRESO, ESTADO_RECHAZADO, ESTADO_PENDIENTE_REVISION,
)
from grc_asignaciones.errors import NotFoundError, ValidationError, InvalidStateError, PermissionDeniedError
from grc_asignaciones.services.identity_service import IdentityService

# Assignee may only touch answers while the work is in their hands
ESTADOS_EDITABLES = (ESTADO_PENDIENTE, ESTADO_EN_PROGRESO, ESTADO_RECHAZADO)


class RespuestaService:
    """
    Question/Answer store. Holds the individual responses; the workflow
    engine only asks it for counts.
    """

    @staticmethod
    def contar_total(dimension_id):
        return Pregunta.query.filter_by(dimension_id=dimension_id, activo=True).count()

    @staticmethod
    def contar_total_encuesta(encuesta_id):
        return Pregunta.query.join(Dimension, Pregunta.dimension_id == Dimension.id).filter(
            Dimension.encuesta_id == encuesta_id,
            Dimension.activo.is_(True),
            Pregunta.activo.is_(True)
        ).count()

    @staticmethod
    def contar_respondidas(asignacion_id):
        return Respuesta.query.join(Pregunta, Respuesta.pregunta_id == Pregunta.id).filter(
            Respuesta.asignacion_id == asignacion_id,
            Respuesta.activo.is_(True),
            Pregunta.activo.is_(True)
        ).count()

    @staticmethod
    def editada_desde(asignacion_id, usuario_id, desde):
        """
        True if usuario_id saved or retracted any answer of the Asignacion
        after `desde`. Retracted rows count, they are an edit too.
        """
        query = Respuesta.query.filter(
            Respuesta.asignacion_id == asignacion_id,
            Respuesta.modificado_por_id == usuario_id
        )
        if desde is not None:
            query = query.filter(Respuesta.fecha_actualizacion > desde)
        return db.session.query(query.exists()).scalar()

    @staticmethod
    def _pregunta_en_alcance(asignacion, pregunta_id):
        pregunta = db.session.get(Pregunta, pregunta_id) if pregunta_id else None
        if not pregunta or not pregunta.activo:
            raise NotFoundError("Pregunta no encontrada", pregunta_id=pregunta_id)
        if asignacion.dimension_id:
            en_alcance = pregunta.dimension_id == asignacion.dimension_id
        else:
            en_alcance = pregunta.dimension.encuesta_id == asignacion.encuesta_id
        if not en_alcance:
            raise ValidationError("La pregunta no pertenece a esta asignación", pregunta_id=pregunta_id)
        return pregunta

    @staticmethod
    def _upsert(asignacion, pregunta, valor, actor):
        respuesta = Respuesta.query.filter_by(asignacion_id=asignacion.id, pregunta_id=pregunta.id).first()
        if respuesta:
            respuesta.valor = valor
            respuesta.activo = True
            respuesta.modificado_por_id = actor.id
            respuesta.fecha_actualizacion = get_now()
        else:
            respuesta = Respuesta(
                asignacion_id=asignacion.id,
                pregunta_id=pregunta.id,
                respondido_por_id=actor.id,
                modificado_por_id=actor.id,
                valor=valor
            )
            db.session.add(respuesta)
        return respuesta

    @staticmethod
    def guardar_respuesta(asignacion_id, pregunta_id, valor, actor):
        """
        Saves (or overwrites) the assignee's answer. The caller is expected to
        trigger AsignacionService.registrar_respuesta afterwards.
        """
        try:
            asignacion = db.session.get(Asignacion, asignacion_id)
            if not asignacion or not asignacion.activo:
                raise NotFoundError("Asignación no encontrada", asignacion_id=asignacion_id)
            if asignacion.usuario_asignado_id != actor.id:
                raise PermissionDeniedError("Solo el usuario asignado puede responder")
            if asignacion.estado not in ESTADOS_EDITABLES:
                raise InvalidStateError(
                    f"No se pueden modificar respuestas en estado '{asignacion.estado}'",
                    estado=asignacion.estado
                )
            pregunta = RespuestaService._pregunta_en_alcance(asignacion, pregunta_id)
            respuesta = RespuestaService._upsert(asignacion, pregunta, valor, actor)
            db.session.commit()
            return respuesta
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def retirar_respuesta(asignacion_id, pregunta_id, actor):
        try:
            asignacion = db.session.get(Asignacion, asignacion_id)
            if not asignacion or not asignacion.activo:
                raise NotFoundError("Asignación no encontrada", asignacion_id=asignacion_id)
            if asignacion.usuario_asignado_id != actor.id:
                raise PermissionDeniedError("Solo el usuario asignado puede retirar respuestas")
            if asignacion.estado not in ESTADOS_EDITABLES:
                raise InvalidStateError(
                    f"No se pueden modificar respuestas en estado '{asignacion.estado}'",
                    estado=asignacion.estado
                )
            respuesta = Respuesta.query.filter_by(asignacion_id=asignacion_id, pregunta_id=pregunta_id, activo=True).first()
            if not respuesta:
                raise NotFoundError("Respuesta no encontrada", pregunta_id=pregunta_id)
            respuesta.activo = False
            respuesta.modificado_por_id = actor.id
            respuesta.fecha_actualizacion = get_now()
            db.session.commit()
            return respuesta
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def editar_en_revision(asignacion_id, pregunta_id, valor, actor):
        """
        Reviewer edit mode: an administrador adjusts answers of an Asignacion
        under review. The Asignacion itself stays in pendiente_revision.
        """
        try:
            asignacion = db.session.get(Asignacion, asignacion_id)
            if not asignacion or not asignacion.activo:
                raise NotFoundError("Asignación no encontrada", asignacion_id=asignacion_id)
            IdentityService.exigir_privilegiado(actor, asignacion.empresa_id)
            if asignacion.estado != ESTADO_PENDIENTE_REVISION:
                raise InvalidStateError(
                    "El modo edición solo está disponible durante la revisión",
                    estado=asignacion.estado
                )
            pregunta = RespuestaService._pregunta_en_alcance(asignacion, pregunta_id)
            respuesta = RespuestaService._upsert(asignacion, pregunta, valor, actor)
            db.session.commit()
            return respuesta
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def listar(asignacion_id):
        return Respuesta.query.filter_by(asignacion_id=asignacion_id, activo=True).all()
