from flask import current_app
from grc_asignaciones.models import db, Dimension, EvaluacionEmpresa
from grc_asignaciones.errors import (
    WorkflowError, NotFoundError, PermissionDeniedError, ValidationError, EmptySurveyError,
)
from grc_asignaciones.services.identity_service import IdentityService
from grc_asignaciones.services.asignacion_service import AsignacionService
from grc_asignaciones.services.progreso_service import ProgresoService, titulares_por_dimension
from grc_asignaciones.services.evento_service import EventoService
from grc_asignaciones.utils import porcentaje_display


def _dimension_dict(d):
    return {'id': d.id, 'codigo': d.codigo, 'nombre': d.nombre, 'orden': d.orden}


class DisponibilidadService:

    @staticmethod
    def _get_evaluacion(evaluacion_id):
        evaluacion = db.session.get(EvaluacionEmpresa, evaluacion_id) if evaluacion_id else None
        if not evaluacion or not evaluacion.activo:
            raise NotFoundError("Evaluación no encontrada", evaluacion_id=evaluacion_id)
        return evaluacion

    @staticmethod
    def _dimensiones(encuesta_id):
        return Dimension.query.filter_by(encuesta_id=encuesta_id, activo=True)\
            .order_by(Dimension.orden, Dimension.codigo).all()

    @staticmethod
    def titulares(evaluacion_id, dimension_ids):
        """Current holder per dimension, as counted by the evaluation rollup."""
        return titulares_por_dimension(ProgresoService._asignaciones_dimension(evaluacion_id), set(dimension_ids))

    @staticmethod
    def dimensiones_disponibles(evaluacion_id, actor):
        evaluacion = DisponibilidadService._get_evaluacion(evaluacion_id)
        if not IdentityService.es_privilegiado_en(actor, evaluacion.empresa_id):
            raise PermissionDeniedError("Solo administradores pueden consultar la disponibilidad")

        dimensiones = DisponibilidadService._dimensiones(evaluacion.encuesta_id)
        titulares = DisponibilidadService.titulares(evaluacion.id, [d.id for d in dimensiones])

        disponibles = [d for d in dimensiones if d.id not in titulares]
        detalle = []
        for d in dimensiones:
            a = titulares.get(d.id)
            if not a:
                continue
            detalle.append({
                'dimension_id': d.id,
                'dimension_nombre': d.nombre,
                'dimension_codigo': d.codigo,
                'asignado_a': a.usuario_asignado.nombre_completo,
                'usuario_id': a.usuario_asignado_id,
                'estado': a.estado_display,
                'porcentaje_avance': porcentaje_display(a.porcentaje_avance),
                'asignacion_id': a.id,
            })

        return {
            'evaluacion_id': evaluacion.id,
            'total_dimensiones': len(dimensiones),
            'dimensiones_asignadas': len(titulares),
            'dimensiones_disponibles': len(disponibles),
            'dimensiones': [_dimension_dict(d) for d in disponibles],
            'todas': [_dimension_dict(d) for d in dimensiones],
            'detalle_asignaciones': detalle,
        }

    @staticmethod
    def asignar_multiples(evaluacion_id, dimension_ids, usuario_id, fecha_limite,
                          requiere_revision=False, observaciones='', actor=None):
        """
        Partial-success bulk assign: each dimension is created inside its own
        SAVEPOINT so one failure never rolls back the others.
        """
        evaluacion = DisponibilidadService._get_evaluacion(evaluacion_id)
        IdentityService.exigir_privilegiado(actor, evaluacion.empresa_id)

        if not DisponibilidadService._dimensiones(evaluacion.encuesta_id):
            raise EmptySurveyError("La encuesta no tiene dimensiones", encuesta_id=evaluacion.encuesta_id)
        if not dimension_ids:
            raise ValidationError("Debe seleccionar al menos una dimensión")

        # Preserve order, ignore repeated ids
        dimension_ids = list(dict.fromkeys(dimension_ids))

        creadas = []
        errores_detalle = []
        try:
            for dimension_id in dimension_ids:
                try:
                    with db.session.begin_nested():
                        asignacion = AsignacionService._crear(
                            evaluacion.id, dimension_id, usuario_id, fecha_limite,
                            requiere_revision, observaciones, actor
                        )
                    creadas.append(asignacion)
                except WorkflowError as e:
                    errores_detalle.append({'dimension_id': dimension_id, **e.to_dict()})

            if creadas:
                ProgresoService.recalcular(evaluacion.id)
            db.session.commit()
            EventoService.despachar()
        except Exception:
            db.session.rollback()
            EventoService.descartar()
            raise

        current_app.logger.info(
            f"Asignacion multiple en evaluacion {evaluacion.id}: {len(creadas)} exitosas, {len(errores_detalle)} errores"
        )
        return {
            'exitosos': len(creadas),
            'errores': len(errores_detalle),
            'errores_detalle': errores_detalle,
            'asignaciones': creadas,
        }
