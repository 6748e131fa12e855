from flask import current_app
from grc_asignaciones.models import (
    db, EvaluacionEmpresa, Encuesta, Empresa, Asignacion, get_today,
    ROL_ADMINISTRADOR, ROL_SUPERADMIN,
    EVALUACION_ACTIVA, EVALUACION_EN_PROGRESO, EVALUACION_COMPLETADA, EVALUACION_VENCIDA, EVALUACION_CANCELADA,
)
from grc_asignaciones.errors import NotFoundError, ValidationError, InvalidStateError, PermissionDeniedError
from grc_asignaciones.services.identity_service import IdentityService
from grc_asignaciones.services.progreso_service import ProgresoService
from grc_asignaciones.utils import parse_fecha


class EvaluacionService:
    """Superadmin hands a survey to a company; the rollup fields belong to ProgresoService."""

    @staticmethod
    def asignar(encuesta_id, empresa_id, administrador_id, fecha_limite, observaciones='', actor=None):
        try:
            IdentityService.exigir_superadmin(actor)

            encuesta = db.session.get(Encuesta, encuesta_id) if encuesta_id else None
            if not encuesta or not encuesta.activo:
                raise ValidationError("Encuesta no encontrada o inactiva", encuesta_id=encuesta_id)
            empresa = db.session.get(Empresa, empresa_id) if empresa_id else None
            if not empresa or not empresa.activo:
                raise ValidationError("Empresa no encontrada o inactiva", empresa_id=empresa_id)

            if administrador_id:
                if not IdentityService.es_miembro_de_empresa(administrador_id, empresa.id) \
                        or IdentityService.rol(administrador_id) != ROL_ADMINISTRADOR:
                    raise ValidationError("El administrador debe pertenecer a la empresa", administrador_id=administrador_id)

            fecha = parse_fecha(fecha_limite)
            if fecha < get_today():
                raise ValidationError("La fecha límite no puede estar en el pasado", fecha_limite=fecha.isoformat())

            duplicada = EvaluacionEmpresa.query.filter(
                EvaluacionEmpresa.encuesta_id == encuesta.id,
                EvaluacionEmpresa.empresa_id == empresa.id,
                EvaluacionEmpresa.activo.is_(True),
                # A stored vencida is still open work, it can finish late
                ~EvaluacionEmpresa.estado.in_((EVALUACION_COMPLETADA, EVALUACION_CANCELADA))
            ).first()
            if duplicada:
                raise ValidationError(
                    "La empresa ya tiene esta encuesta en curso",
                    evaluacion_id=duplicada.id
                )

            evaluacion = EvaluacionEmpresa(
                encuesta_id=encuesta.id,
                empresa_id=empresa.id,
                administrador_id=administrador_id or None,
                asignado_por_id=actor.id,
                fecha_limite=fecha,
                observaciones=observaciones or ''
            )
            db.session.add(evaluacion)
            db.session.flush()
            ProgresoService.recalcular(evaluacion.id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        current_app.logger.info(f"Evaluacion {evaluacion.id} creada: encuesta={encuesta.id} empresa={empresa.id}")
        return evaluacion

    @staticmethod
    def cancelar(evaluacion_id, motivo=None, actor=None):
        """Sticky: the aggregator never moves a cancelled evaluation again."""
        try:
            evaluacion = EvaluacionService._get(evaluacion_id)
            IdentityService.exigir_superadmin(actor)
            if evaluacion.estado in (EVALUACION_COMPLETADA, EVALUACION_CANCELADA):
                raise InvalidStateError(
                    f"No se puede cancelar una evaluación '{evaluacion.estado}'", estado=evaluacion.estado
                )
            evaluacion.estado = EVALUACION_CANCELADA
            if motivo:
                nota = f"[Cancelada {get_today().isoformat()}] {motivo.strip()}"
                evaluacion.observaciones = f"{evaluacion.observaciones}\n{nota}" if evaluacion.observaciones else nota
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        current_app.logger.info(f"Evaluacion {evaluacion.id} cancelada por {actor.id}")
        return evaluacion

    @staticmethod
    def _get(evaluacion_id):
        evaluacion = db.session.get(EvaluacionEmpresa, evaluacion_id) if evaluacion_id else None
        if not evaluacion or not evaluacion.activo:
            raise NotFoundError("Evaluación no encontrada", evaluacion_id=evaluacion_id)
        return evaluacion

    @staticmethod
    def obtener(evaluacion_id, actor):
        evaluacion = EvaluacionService._get(evaluacion_id)
        if not IdentityService.puede_ver_empresa(actor, evaluacion.empresa_id):
            raise PermissionDeniedError("No tiene acceso a esta evaluación")
        return evaluacion

    @staticmethod
    def listar(actor, estado=None, empresa_id=None):
        query = EvaluacionEmpresa.query.filter(EvaluacionEmpresa.activo.is_(True))
        rol = IdentityService.rol(actor.id)
        if rol == ROL_SUPERADMIN:
            if empresa_id:
                query = query.filter(EvaluacionEmpresa.empresa_id == empresa_id)
        elif rol == ROL_ADMINISTRADOR:
            query = query.filter(EvaluacionEmpresa.empresa_id == actor.empresa_id)
        else:
            # Plain users only see evaluations where they hold work
            query = query.join(Asignacion, Asignacion.evaluacion_id == EvaluacionEmpresa.id).filter(
                Asignacion.usuario_asignado_id == actor.id,
                Asignacion.activo.is_(True)
            ).distinct()

        evaluaciones = query.order_by(EvaluacionEmpresa.fecha_limite.asc()).all()
        if estado:
            evaluaciones = [e for e in evaluaciones if e.estado_display == estado]
        return evaluaciones

    @staticmethod
    def estadisticas(actor):
        evaluaciones = EvaluacionService.listar(actor)

        def contar(estado):
            return sum(1 for e in evaluaciones if e.estado_display == estado)

        return {
            'total': len(evaluaciones),
            'activas': contar(EVALUACION_ACTIVA),
            'en_progreso': contar(EVALUACION_EN_PROGRESO),
            'completadas': contar(EVALUACION_COMPLETADA),
            'vencidas': contar(EVALUACION_VENCIDA),
            'canceladas': contar(EVALUACION_CANCELADA),
        }
