from flask import current_app
from sqlalchemy.exc import IntegrityError
from grc_asignaciones.models import (
    db, Asignacion, EvaluacionEmpresa, Dimension, get_now, get_today,
    ESTADO_PENDIENTE, ESTADO_EN_PROGRESO, ESTADO_COMPLETADO, ESTADO_PENDIENTE_REVISION,
    ESTADO_RECHAZADO, ESTADO_VENCIDO, ESTADOS_ASIGNACION,
    REVISION_APROBADO, REVISION_RECHAZADO, REVISION_REABIERTA,
    EVALUACION_CANCELADA, ROL_ADMINISTRADOR, ROLES_PRIVILEGIADOS,
)
from grc_asignaciones.errors import (
    ValidationError, InvalidStateError, NotFoundError, PermissionDeniedError, DimensionYaAsignadaError,
)
from grc_asignaciones.services.identity_service import IdentityService
from grc_asignaciones.services.respuesta_service import RespuestaService
from grc_asignaciones.services.progreso_service import ProgresoService
from grc_asignaciones.services import evento_service as eventos
from grc_asignaciones.services.evento_service import EventoService
from grc_asignaciones.utils import parse_fecha

ACCION_APROBAR = 'aprobar'
ACCION_RECHAZAR = 'rechazar'

# Reassignment is only legal while the work is not in flight
ESTADOS_REASIGNABLES = (ESTADO_PENDIENTE, ESTADO_RECHAZADO)


def derivar_estado(respondidas, total, requiere_revision, estado_revision=None):
    """
    Asignacion state as a pure function of its counters and review outcome.

    estado_revision: None (never reviewed), 'aprobado', 'rechazado' or
    'reabierta' (rejected and edited again by the assignee).
    """
    if estado_revision == REVISION_APROBADO:
        return ESTADO_COMPLETADO
    if estado_revision == REVISION_RECHAZADO:
        return ESTADO_RECHAZADO
    if total <= 0 or respondidas <= 0:
        return ESTADO_PENDIENTE
    if estado_revision == REVISION_REABIERTA or respondidas < total:
        return ESTADO_EN_PROGRESO
    return ESTADO_PENDIENTE_REVISION if requiere_revision else ESTADO_COMPLETADO


def _es_violacion_unicidad(error):
    mensaje = str(getattr(error, 'orig', error)).lower()
    return 'unique' in mensaje or 'duplicate' in mensaje


class AsignacionService:

    # --- helpers -----------------------------------------------------------

    @staticmethod
    def _get(asignacion_id):
        asignacion = db.session.get(Asignacion, asignacion_id) if asignacion_id else None
        if not asignacion or not asignacion.activo:
            raise NotFoundError("Asignación no encontrada", asignacion_id=asignacion_id)
        return asignacion

    @staticmethod
    def _get_evaluacion(evaluacion_id):
        evaluacion = db.session.get(EvaluacionEmpresa, evaluacion_id) if evaluacion_id else None
        if not evaluacion or not evaluacion.activo:
            raise NotFoundError("Evaluación no encontrada", evaluacion_id=evaluacion_id)
        return evaluacion

    @staticmethod
    def _exigir_evaluacion_abierta(evaluacion):
        if evaluacion.estado == EVALUACION_CANCELADA:
            raise InvalidStateError("La evaluación está cancelada", evaluacion_id=evaluacion.id)

    @staticmethod
    def _validar_fecha_limite(value):
        fecha = parse_fecha(value)
        if fecha < get_today():
            raise ValidationError("La fecha límite no puede estar en el pasado", fecha_limite=fecha.isoformat())
        return fecha

    @staticmethod
    def _aplicar_conteo(asignacion, respondidas):
        total = asignacion.total_preguntas or 0
        respondidas = max(0, min(respondidas, total))
        asignacion.preguntas_respondidas = respondidas
        asignacion.porcentaje_avance = (respondidas / total * 100.0) if total > 0 else 0.0

    @staticmethod
    def _commit():
        db.session.commit()
        EventoService.despachar()

    @staticmethod
    def _rollback():
        db.session.rollback()
        EventoService.descartar()

    # --- creation ----------------------------------------------------------

    @staticmethod
    def _crear(evaluacion_id, dimension_id, usuario_id, fecha_limite, requiere_revision, observaciones, actor):
        """Does the work of crear() without committing (used inside savepoints)."""
        evaluacion = AsignacionService._get_evaluacion(evaluacion_id)
        IdentityService.exigir_privilegiado(actor, evaluacion.empresa_id)
        AsignacionService._exigir_evaluacion_abierta(evaluacion)

        fecha = AsignacionService._validar_fecha_limite(fecha_limite)

        if not usuario_id or not IdentityService.es_miembro_de_empresa(usuario_id, evaluacion.empresa_id):
            raise ValidationError("El usuario no pertenece a la empresa de la evaluación", usuario_id=usuario_id)

        if dimension_id:
            dimension = db.session.get(Dimension, dimension_id)
            if not dimension or not dimension.activo or dimension.encuesta_id != evaluacion.encuesta_id:
                raise ValidationError("La dimensión no pertenece a la encuesta evaluada", dimension_id=dimension_id)

            titular = Asignacion.query.filter_by(
                evaluacion_id=evaluacion.id, dimension_id=dimension_id, activo=True
            ).first()
            if titular:
                if titular.estado != ESTADO_RECHAZADO:
                    raise DimensionYaAsignadaError(
                        f"La dimensión '{dimension.nombre}' ya está asignada",
                        dimension_id=dimension_id,
                        asignacion_id=titular.id,
                        usuario_id=titular.usuario_asignado_id
                    )
                # A rejected holder is superseded by the new assignment
                titular.activo = False
                db.session.flush()
                current_app.logger.info(f"Asignacion {titular.id} reemplazada en dimension {dimension_id}")

            total = RespuestaService.contar_total(dimension_id)
        else:
            # Whole-survey hand-off: superadmin -> administrador
            IdentityService.exigir_superadmin(actor)
            if IdentityService.rol(usuario_id) != ROL_ADMINISTRADOR:
                raise ValidationError("La evaluación completa solo puede asignarse a un administrador", usuario_id=usuario_id)
            total = RespuestaService.contar_total_encuesta(evaluacion.encuesta_id)

        requiere_revision = bool(requiere_revision)
        asignacion = Asignacion(
            evaluacion_id=evaluacion.id,
            encuesta_id=evaluacion.encuesta_id,
            empresa_id=evaluacion.empresa_id,
            dimension_id=dimension_id or None,
            usuario_asignado_id=usuario_id,
            asignado_por_id=actor.id,
            fecha_limite=fecha,
            total_preguntas=total,
            preguntas_respondidas=0,
            porcentaje_avance=0.0,
            requiere_revision=requiere_revision,
            estado=derivar_estado(0, total, requiere_revision),
            observaciones=observaciones or ''
        )
        db.session.add(asignacion)
        try:
            db.session.flush()
        except IntegrityError as e:
            if not _es_violacion_unicidad(e):
                raise
            if dimension_id:
                raise DimensionYaAsignadaError("La dimensión ya fue asignada por otra solicitud", dimension_id=dimension_id)
            raise ValidationError("El usuario ya tiene asignada esta evaluación completa", usuario_id=usuario_id)

        EventoService.registrar(
            asignacion, eventos.ASSIGNMENT_CREATED, actor.id, usuario_id,
            payload={
                'dimension_id': asignacion.dimension_id,
                'fecha_limite': fecha.isoformat(),
                'requiere_revision': requiere_revision
            }
        )
        return asignacion

    @staticmethod
    def crear(evaluacion_id, dimension_id, usuario_id, fecha_limite, requiere_revision=False, observaciones='', actor=None):
        try:
            asignacion = AsignacionService._crear(
                evaluacion_id, dimension_id, usuario_id, fecha_limite, requiere_revision, observaciones, actor
            )
            if asignacion.dimension_id:
                ProgresoService.recalcular(asignacion.evaluacion_id)
            AsignacionService._commit()
        except IntegrityError as e:
            AsignacionService._rollback()
            if dimension_id and _es_violacion_unicidad(e):
                raise DimensionYaAsignadaError("La dimensión ya fue asignada por otra solicitud", dimension_id=dimension_id)
            raise
        except Exception:
            AsignacionService._rollback()
            raise

        current_app.logger.info(
            f"Asignacion {asignacion.id} creada: evaluacion={asignacion.evaluacion_id} "
            f"dimension={asignacion.dimension_id} usuario={asignacion.usuario_asignado_id}"
        )
        return asignacion

    # --- progress ----------------------------------------------------------

    @staticmethod
    def registrar_respuesta(asignacion_id, pregunta_id=None, actor=None):
        """
        Re-reads the authoritative answer count and re-evaluates the state.
        Never increments ad hoc, so edits and retractions are tolerated.
        """
        try:
            asignacion = AsignacionService._get(asignacion_id)
            es_asignado = asignacion.usuario_asignado_id == actor.id
            if not es_asignado and not IdentityService.es_privilegiado_en(actor, asignacion.empresa_id):
                raise PermissionDeniedError("No puede registrar respuestas en esta asignación")
            AsignacionService._exigir_evaluacion_abierta(asignacion.evaluacion)

            anterior = asignacion.estado
            AsignacionService._aplicar_conteo(asignacion, RespuestaService.contar_respondidas(asignacion.id))

            reabrir = anterior == ESTADO_RECHAZADO and es_asignado and RespuestaService.editada_desde(
                asignacion.id, asignacion.usuario_asignado_id, asignacion.fecha_revision
            )
            if anterior in (ESTADO_PENDIENTE_REVISION, ESTADO_COMPLETADO) or (
                    anterior == ESTADO_RECHAZADO and not reabrir):
                # Counts refresh, state only moves through revisar() or an assignee edit
                nuevo = anterior
            else:
                if reabrir:
                    asignacion.estado_revision = REVISION_REABIERTA
                nuevo = derivar_estado(
                    asignacion.preguntas_respondidas, asignacion.total_preguntas,
                    asignacion.requiere_revision, asignacion.estado_revision
                )

            AsignacionService._transicionar(asignacion, anterior, nuevo, actor)

            if asignacion.dimension_id:
                ProgresoService.recalcular(asignacion.evaluacion_id)
            AsignacionService._commit()
        except Exception:
            AsignacionService._rollback()
            raise

        if anterior != nuevo:
            current_app.logger.info(f"Asignacion {asignacion.id}: {anterior} -> {nuevo} (pregunta={pregunta_id})")
        return asignacion

    @staticmethod
    def _transicionar(asignacion, anterior, nuevo, actor):
        asignacion.estado = nuevo
        if nuevo == anterior:
            return
        if nuevo == ESTADO_PENDIENTE_REVISION:
            asignacion.fecha_envio_revision = get_now()
            EventoService.registrar(
                asignacion, eventos.ASSIGNMENT_SUBMITTED_FOR_REVIEW, actor.id, asignacion.asignado_por_id,
                payload={'preguntas_respondidas': asignacion.preguntas_respondidas}
            )
        elif nuevo == ESTADO_COMPLETADO and not asignacion.fecha_completado:
            asignacion.fecha_completado = get_now()

    @staticmethod
    def enviar_a_revision(asignacion_id, actor):
        """Resubmits a re-opened Asignacion once every question is answered again."""
        try:
            asignacion = AsignacionService._get(asignacion_id)
            if asignacion.usuario_asignado_id != actor.id:
                raise PermissionDeniedError("Solo el usuario asignado puede enviar a revisión")
            if asignacion.estado != ESTADO_EN_PROGRESO:
                raise InvalidStateError(
                    f"No se puede enviar a revisión desde '{asignacion.estado}'", estado=asignacion.estado
                )
            AsignacionService._exigir_evaluacion_abierta(asignacion.evaluacion)

            AsignacionService._aplicar_conteo(asignacion, RespuestaService.contar_respondidas(asignacion.id))
            if asignacion.preguntas_respondidas < asignacion.total_preguntas or asignacion.total_preguntas == 0:
                raise ValidationError(
                    "Faltan preguntas por responder",
                    preguntas_respondidas=asignacion.preguntas_respondidas,
                    total_preguntas=asignacion.total_preguntas
                )

            asignacion.estado_revision = None
            nuevo = derivar_estado(
                asignacion.preguntas_respondidas, asignacion.total_preguntas, asignacion.requiere_revision
            )
            AsignacionService._transicionar(asignacion, ESTADO_EN_PROGRESO, nuevo, actor)

            if asignacion.dimension_id:
                ProgresoService.recalcular(asignacion.evaluacion_id)
            AsignacionService._commit()
            return asignacion
        except Exception:
            AsignacionService._rollback()
            raise

    # --- review ------------------------------------------------------------

    @staticmethod
    def revisar(asignacion_id, accion, comentarios=None, actor=None):
        try:
            asignacion = AsignacionService._get(asignacion_id)
            IdentityService.exigir_privilegiado(actor, asignacion.empresa_id)

            if accion not in (ACCION_APROBAR, ACCION_RECHAZAR):
                raise ValidationError("Acción inválida. Use 'aprobar' o 'rechazar'", accion=accion)
            comentarios = (comentarios or '').strip()
            if accion == ACCION_RECHAZAR and not comentarios:
                raise ValidationError("Debe proporcionar comentarios al rechazar")

            now = get_now()
            if accion == ACCION_APROBAR:
                valores = {
                    Asignacion.estado: ESTADO_COMPLETADO,
                    Asignacion.estado_revision: REVISION_APROBADO,
                    Asignacion.fecha_completado: now,
                }
            else:
                valores = {
                    Asignacion.estado: ESTADO_RECHAZADO,
                    Asignacion.estado_revision: REVISION_RECHAZADO,
                }
            valores.update({
                Asignacion.revisado_por_id: actor.id,
                Asignacion.fecha_revision: now,
                Asignacion.comentarios_revision: comentarios,
            })

            # Guarded update: only one concurrent review can move it out of pendiente_revision
            filas = Asignacion.query.filter(
                Asignacion.id == asignacion.id,
                Asignacion.activo.is_(True),
                Asignacion.estado == ESTADO_PENDIENTE_REVISION
            ).update(valores, synchronize_session=False)
            if filas == 0:
                raise InvalidStateError(
                    f"Solo se pueden revisar asignaciones en 'pendiente_revision' (actual: '{asignacion.estado}')",
                    estado=asignacion.estado
                )
            db.session.refresh(asignacion)

            EventoService.registrar(
                asignacion,
                eventos.ASSIGNMENT_APPROVED if accion == ACCION_APROBAR else eventos.ASSIGNMENT_REJECTED,
                actor.id, asignacion.usuario_asignado_id,
                payload={'comentarios': comentarios}
            )

            if asignacion.dimension_id:
                ProgresoService.recalcular(asignacion.evaluacion_id)
            AsignacionService._commit()
        except Exception:
            AsignacionService._rollback()
            raise

        current_app.logger.info(f"Asignacion {asignacion.id} revisada ({accion}) por {actor.id}")
        return asignacion

    # --- reassignment / removal ---------------------------------------------

    @staticmethod
    def reasignar(asignacion_id, nuevo_usuario_id, nueva_fecha_limite=None, motivo=None, actor=None):
        """Changes the assignee without touching answers or counters."""
        try:
            asignacion = AsignacionService._get(asignacion_id)
            IdentityService.exigir_privilegiado(actor, asignacion.empresa_id)
            if asignacion.es_evaluacion_completa:
                IdentityService.exigir_superadmin(actor)

            if asignacion.estado not in ESTADOS_REASIGNABLES:
                raise InvalidStateError(
                    f"Solo se puede reasignar desde 'pendiente' o 'rechazado' (actual: '{asignacion.estado}')",
                    estado=asignacion.estado
                )
            if not nuevo_usuario_id or not IdentityService.es_miembro_de_empresa(nuevo_usuario_id, asignacion.empresa_id):
                raise ValidationError("El nuevo usuario no pertenece a la empresa", usuario_id=nuevo_usuario_id)
            if nuevo_usuario_id == asignacion.usuario_asignado_id:
                raise ValidationError("La asignación ya pertenece a ese usuario", usuario_id=nuevo_usuario_id)
            if asignacion.es_evaluacion_completa and IdentityService.rol(nuevo_usuario_id) != ROL_ADMINISTRADOR:
                raise ValidationError("La evaluación completa solo puede asignarse a un administrador", usuario_id=nuevo_usuario_id)

            anterior_id = asignacion.usuario_asignado_id
            asignacion.usuario_asignado_id = nuevo_usuario_id
            if nueva_fecha_limite:
                asignacion.fecha_limite = AsignacionService._validar_fecha_limite(nueva_fecha_limite)
            if motivo:
                nota = f"[Reasignación {get_today().isoformat()}] {motivo.strip()}"
                asignacion.observaciones = f"{asignacion.observaciones}\n{nota}" if asignacion.observaciones else nota

            try:
                db.session.flush()
            except IntegrityError as e:
                if not _es_violacion_unicidad(e):
                    raise
                raise ValidationError("El usuario ya tiene asignada esta evaluación completa", usuario_id=nuevo_usuario_id)

            EventoService.registrar(
                asignacion, eventos.ASSIGNMENT_REASSIGNED, actor.id, nuevo_usuario_id,
                payload={'usuario_anterior_id': anterior_id, 'motivo': motivo or ''}
            )
            AsignacionService._commit()
        except Exception:
            AsignacionService._rollback()
            raise

        current_app.logger.info(f"Asignacion {asignacion.id} reasignada {anterior_id} -> {nuevo_usuario_id}")
        return asignacion

    @staticmethod
    def desactivar(asignacion_id, actor):
        """Soft delete; the dimension becomes available again."""
        try:
            asignacion = AsignacionService._get(asignacion_id)
            IdentityService.exigir_privilegiado(actor, asignacion.empresa_id)
            asignacion.activo = False
            db.session.flush()
            if asignacion.dimension_id:
                ProgresoService.recalcular(asignacion.evaluacion_id)
            AsignacionService._commit()
            return asignacion
        except Exception:
            AsignacionService._rollback()
            raise

    # --- queries -----------------------------------------------------------

    @staticmethod
    def obtener(asignacion_id, actor):
        asignacion = AsignacionService._get(asignacion_id)
        if asignacion.usuario_asignado_id != actor.id and not IdentityService.es_privilegiado_en(actor, asignacion.empresa_id):
            raise PermissionDeniedError("No tiene acceso a esta asignación")
        return asignacion

    @staticmethod
    def listar(actor, filtros=None):
        """
        Superadmin sees everything, administrador its company, usuario its own work.
        Supported filters: estado (including the display state 'vencido'), tipo,
        evaluacion_id, usuario_id.
        """
        filtros = filtros or {}
        query = Asignacion.query.filter(Asignacion.activo.is_(True))

        rol = IdentityService.rol(actor.id)
        if rol == ROL_ADMINISTRADOR:
            query = query.filter(Asignacion.empresa_id == actor.empresa_id)
        elif rol not in ROLES_PRIVILEGIADOS:
            query = query.filter(Asignacion.usuario_asignado_id == actor.id)

        if filtros.get('evaluacion_id'):
            query = query.filter(Asignacion.evaluacion_id == filtros['evaluacion_id'])
        if filtros.get('usuario_id'):
            query = query.filter(Asignacion.usuario_asignado_id == filtros['usuario_id'])

        tipo = filtros.get('tipo')
        if tipo == 'evaluacion_completa':
            query = query.filter(Asignacion.dimension_id.is_(None))
        elif tipo == 'dimension':
            query = query.filter(Asignacion.dimension_id.isnot(None))
        elif tipo:
            raise ValidationError("Tipo inválido. Use 'evaluacion_completa' o 'dimension'", tipo=tipo)

        estado = filtros.get('estado')
        if estado and estado not in ESTADOS_ASIGNACION + (ESTADO_VENCIDO,):
            raise ValidationError("Estado inválido", estado=estado)

        asignaciones = query.order_by(Asignacion.fecha_asignacion.desc()).all()
        if estado:
            # Deadline flag is derived on read, so filter on the display state
            asignaciones = [a for a in asignaciones if a.estado_display == estado]
        return asignaciones

    @staticmethod
    def mis_asignaciones(actor, estado=None, tipo=None):
        return AsignacionService.listar(actor, {'usuario_id': actor.id, 'estado': estado, 'tipo': tipo})

    @staticmethod
    def pendientes_revision(actor):
        if IdentityService.rol(actor.id) not in ROLES_PRIVILEGIADOS:
            raise PermissionDeniedError("Solo administradores pueden revisar asignaciones")
        return [a for a in AsignacionService.listar(actor) if a.estado == ESTADO_PENDIENTE_REVISION]

    @staticmethod
    def estadisticas(actor):
        asignaciones = AsignacionService.listar(actor)
        total = len(asignaciones)

        def contar(estado):
            return sum(1 for a in asignaciones if a.estado_display == estado)

        completadas = contar(ESTADO_COMPLETADO)
        return {
            'total_asignaciones': total,
            'por_estado': {
                'pendientes': contar(ESTADO_PENDIENTE),
                'en_progreso': contar(ESTADO_EN_PROGRESO),
                'completadas': completadas,
                'vencidas': contar(ESTADO_VENCIDO),
                'pendientes_revision': contar(ESTADO_PENDIENTE_REVISION),
                'rechazadas': contar(ESTADO_RECHAZADO),
            },
            'por_tipo': {
                'evaluaciones_completas': sum(1 for a in asignaciones if a.es_evaluacion_completa),
                'dimensiones_especificas': sum(1 for a in asignaciones if not a.es_evaluacion_completa),
            },
            'porcentaje_completado': round(completadas / total * 100, 2) if total else 0.0,
        }
