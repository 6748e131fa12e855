from collections import defaultdict
from datetime import datetime
from flask import current_app
from grc_asignaciones.models import (
    db, EvaluacionEmpresa, Asignacion, Dimension, get_now, get_today,
    ESTADO_COMPLETADO, ESTADO_EN_PROGRESO, ESTADO_PENDIENTE_REVISION, ESTADO_RECHAZADO,
    EVALUACION_ACTIVA, EVALUACION_EN_PROGRESO, EVALUACION_COMPLETADA, EVALUACION_VENCIDA, EVALUACION_CANCELADA,
)
from grc_asignaciones.errors import NotFoundError, PermissionDeniedError
from grc_asignaciones.services.identity_service import IdentityService
from grc_asignaciones.utils import porcentaje_display, iso

# Work that is in someone's hands keeps the evaluation "en_progreso"
ESTADOS_EN_CURSO = (ESTADO_EN_PROGRESO, ESTADO_PENDIENTE_REVISION)


def vigente_por_dimension(asignaciones, dimension_ids):
    """
    One Asignacion per dimension: the most recent active one.
    Deactivated rows and dimensions outside the survey are ignored.
    """
    por_dimension = {}
    for a in asignaciones:
        if not a.activo or a.dimension_id is None or a.dimension_id not in dimension_ids:
            continue
        actual = por_dimension.get(a.dimension_id)
        if actual is None or (a.fecha_asignacion or datetime.min) >= (actual.fecha_asignacion or datetime.min):
            por_dimension[a.dimension_id] = a
    return por_dimension


def titulares_por_dimension(asignaciones, dimension_ids):
    """
    Which dimensions count as assigned: the most recent active Asignacion
    that is not rechazado. A rejected holder leaves its dimension open, both
    for the rollup and for availability.
    """
    return vigente_por_dimension([a for a in asignaciones if a.estado != ESTADO_RECHAZADO], dimension_ids)


def calcular_progreso(asignaciones, dimension_ids, fecha_limite, hoy, cancelada=False):
    """
    Pure rollup of an evaluation from its current set of Asignaciones.
    Safe to replay at any time; never depends on previously stored counters.
    """
    dimension_ids = set(dimension_ids)
    vigentes = titulares_por_dimension(asignaciones, dimension_ids)

    total = len(dimension_ids)
    asignadas = len(vigentes)
    completadas = sum(1 for a in vigentes.values() if a.estado == ESTADO_COMPLETADO)
    en_curso = any(a.estado in ESTADOS_EN_CURSO for a in vigentes.values())

    if vigentes:
        porcentaje = sum(float(a.porcentaje_avance or 0) for a in vigentes.values()) / len(vigentes)
    else:
        porcentaje = 0.0

    if cancelada:
        estado = EVALUACION_CANCELADA
    elif total > 0 and completadas == total:
        estado = EVALUACION_COMPLETADA
    elif hoy > fecha_limite:
        # Display override only: counters stay intact so it can still finish late
        estado = EVALUACION_VENCIDA
    elif completadas > 0 or en_curso:
        estado = EVALUACION_EN_PROGRESO
    else:
        estado = EVALUACION_ACTIVA

    return {
        'total_dimensiones': total,
        'dimensiones_asignadas': asignadas,
        'dimensiones_completadas': completadas,
        'porcentaje_avance': porcentaje,
        'estado': estado,
    }


class ProgresoService:

    @staticmethod
    def _dimension_ids(encuesta_id):
        return [d.id for d in Dimension.query.filter_by(encuesta_id=encuesta_id, activo=True).all()]

    @staticmethod
    def _asignaciones_dimension(evaluacion_id):
        return Asignacion.query.filter(
            Asignacion.evaluacion_id == evaluacion_id,
            Asignacion.activo.is_(True),
            Asignacion.dimension_id.isnot(None)
        ).all()

    @staticmethod
    def calcular(evaluacion, hoy=None):
        return calcular_progreso(
            ProgresoService._asignaciones_dimension(evaluacion.id),
            ProgresoService._dimension_ids(evaluacion.encuesta_id),
            evaluacion.fecha_limite,
            hoy or get_today(),
            cancelada=evaluacion.estado == EVALUACION_CANCELADA
        )

    @staticmethod
    def recalcular(evaluacion_id, commit=False):
        """
        Recomputes and stores the evaluation rollup. Runs inside the caller's
        transaction unless commit=True.

        Concurrent recomputes of the same evaluation are serialized by the
        row lock (SELECT ... FOR UPDATE), held until the caller commits. SQLite
        ignores FOR UPDATE, but its single database writer lock makes a
        conflicting transaction fail instead of storing a stale rollup. The
        rollup is rebuilt from the full Asignacion set, so replaying it is
        harmless.
        """
        try:
            evaluacion = EvaluacionEmpresa.query.filter_by(id=evaluacion_id).with_for_update().first()
            if not evaluacion:
                raise NotFoundError("Evaluación no encontrada", evaluacion_id=evaluacion_id)

            resultado = ProgresoService.calcular(evaluacion)
            evaluacion.total_dimensiones = resultado['total_dimensiones']
            evaluacion.dimensiones_asignadas = resultado['dimensiones_asignadas']
            evaluacion.dimensiones_completadas = resultado['dimensiones_completadas']
            evaluacion.porcentaje_avance = resultado['porcentaje_avance']
            evaluacion.estado = resultado['estado']

            if resultado['estado'] == EVALUACION_COMPLETADA:
                if not evaluacion.fecha_completado:
                    evaluacion.fecha_completado = get_now()
            elif evaluacion.fecha_completado:
                evaluacion.fecha_completado = None

            db.session.flush()
            if commit:
                db.session.commit()
            return evaluacion
        except Exception:
            if commit:
                db.session.rollback()
            raise

    @staticmethod
    def recalcular_todas():
        """Replays the rollup for every active evaluation (repair tool)."""
        ids = [e.id for e in EvaluacionEmpresa.query.filter_by(activo=True).all()]
        for evaluacion_id in ids:
            ProgresoService.recalcular(evaluacion_id, commit=True)
        current_app.logger.info(f"Progreso recalculado para {len(ids)} evaluaciones")
        return len(ids)

    @staticmethod
    def progreso_detallado(evaluacion_id, actor):
        evaluacion = db.session.get(EvaluacionEmpresa, evaluacion_id)
        if not evaluacion or not evaluacion.activo:
            raise NotFoundError("Evaluación no encontrada", evaluacion_id=evaluacion_id)
        if not IdentityService.puede_ver_empresa(actor, evaluacion.empresa_id):
            raise PermissionDeniedError("No tiene acceso a esta evaluación")

        # Computed on read so deadline overrides never wait for a write
        resultado = ProgresoService.calcular(evaluacion)

        dimensiones = Dimension.query.filter_by(encuesta_id=evaluacion.encuesta_id, activo=True)\
            .order_by(Dimension.orden, Dimension.codigo).all()
        por_dimension = defaultdict(list)
        for a in ProgresoService._asignaciones_dimension(evaluacion.id):
            por_dimension[a.dimension_id].append(a)

        detalle = []
        for d in dimensiones:
            asignaciones = por_dimension.get(d.id, [])
            detalle.append({
                'dimension': {'id': d.id, 'codigo': d.codigo, 'nombre': d.nombre},
                'asignaciones': [{
                    'id': a.id,
                    'usuario': a.usuario_asignado.nombre_completo,
                    'usuario_id': a.usuario_asignado_id,
                    'estado': a.estado_display,
                    'porcentaje_avance': porcentaje_display(a.porcentaje_avance),
                    'fecha_limite': iso(a.fecha_limite),
                } for a in asignaciones],
                'total_asignaciones': len(asignaciones),
                'completadas': sum(1 for a in asignaciones if a.estado == ESTADO_COMPLETADO),
                'en_progreso': sum(1 for a in asignaciones if a.estado in ESTADOS_EN_CURSO),
                'rechazadas': sum(1 for a in asignaciones if a.estado == ESTADO_RECHAZADO),
                'pendientes': sum(1 for a in asignaciones
                                  if a.estado not in ESTADOS_EN_CURSO + (ESTADO_COMPLETADO, ESTADO_RECHAZADO)),
            })

        return {
            'evaluacion': {
                'id': evaluacion.id,
                'encuesta': evaluacion.encuesta.nombre,
                'empresa': evaluacion.empresa.nombre,
                'estado': resultado['estado'],
                'porcentaje_avance': porcentaje_display(resultado['porcentaje_avance']),
                'total_dimensiones': resultado['total_dimensiones'],
                'dimensiones_asignadas': resultado['dimensiones_asignadas'],
                'dimensiones_completadas': resultado['dimensiones_completadas'],
                'fecha_limite': iso(evaluacion.fecha_limite),
                'esta_vencida': resultado['estado'] == EVALUACION_VENCIDA,
            },
            'dimensiones': detalle,
        }
