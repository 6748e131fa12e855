from flask import Blueprint, request
from flask_login import login_required, current_user
from grc_asignaciones.services.evaluacion_service import EvaluacionService
from grc_asignaciones.services.disponibilidad_service import DisponibilidadService
from grc_asignaciones.services.progreso_service import ProgresoService
from grc_asignaciones.services.identity_service import IdentityService
from grc_asignaciones.errors import ValidationError, PermissionDeniedError
from grc_asignaciones.utils import api_response, iso, porcentaje_display

evaluaciones_bp = Blueprint('evaluaciones', __name__)


def evaluacion_dict(e):
    return {
        'id': e.id,
        'encuesta': {'id': e.encuesta_id, 'nombre': e.encuesta.nombre},
        'empresa': {'id': e.empresa_id, 'nombre': e.empresa.nombre},
        'administrador_id': e.administrador_id,
        'asignado_por_id': e.asignado_por_id,
        'estado': e.estado_display,
        'esta_vencida': e.esta_vencida,
        'dias_restantes': e.dias_restantes,
        'fecha_asignacion': iso(e.fecha_asignacion),
        'fecha_limite': iso(e.fecha_limite),
        'fecha_completado': iso(e.fecha_completado),
        'total_dimensiones': e.total_dimensiones,
        'dimensiones_asignadas': e.dimensiones_asignadas,
        'dimensiones_completadas': e.dimensiones_completadas,
        'porcentaje_avance': porcentaje_display(e.porcentaje_avance),
        'observaciones': e.observaciones or '',
    }


@evaluaciones_bp.route('/evaluations', methods=['POST'])
@login_required
def asignar():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("El cuerpo de la solicitud debe ser un objeto JSON")
    evaluacion = EvaluacionService.asignar(
        encuesta_id=data.get('encuesta_id'),
        empresa_id=data.get('empresa_id'),
        administrador_id=data.get('administrador_id'),
        fecha_limite=data.get('fecha_limite'),
        observaciones=data.get('observaciones', ''),
        actor=current_user
    )
    return api_response(data=evaluacion_dict(evaluacion), status=201)


@evaluaciones_bp.route('/evaluations/<evaluacion_id>/cancel', methods=['POST'])
@login_required
def cancelar(evaluacion_id):
    data = request.get_json(silent=True) or {}
    evaluacion = EvaluacionService.cancelar(evaluacion_id, motivo=data.get('motivo'), actor=current_user)
    return api_response(data=evaluacion_dict(evaluacion))


@evaluaciones_bp.route('/evaluations/<evaluacion_id>/recompute', methods=['POST'])
@login_required
def recalcular(evaluacion_id):
    evaluacion = EvaluacionService.obtener(evaluacion_id, current_user)
    if not IdentityService.es_privilegiado_en(current_user, evaluacion.empresa_id):
        raise PermissionDeniedError("Solo administradores pueden recalcular el progreso")
    evaluacion = ProgresoService.recalcular(evaluacion.id, commit=True)
    return api_response(data=evaluacion_dict(evaluacion))


@evaluaciones_bp.route('/evaluations/<evaluacion_id>/dimension-availability', methods=['GET'])
@login_required
def disponibilidad(evaluacion_id):
    return api_response(data=DisponibilidadService.dimensiones_disponibles(evaluacion_id, current_user))


@evaluaciones_bp.route('/evaluations/<evaluacion_id>/progress', methods=['GET'])
@login_required
def progreso(evaluacion_id):
    return api_response(data=ProgresoService.progreso_detallado(evaluacion_id, current_user))


@evaluaciones_bp.route('/evaluations', methods=['GET'])
@login_required
def listar():
    evaluaciones = EvaluacionService.listar(
        current_user, estado=request.args.get('estado'), empresa_id=request.args.get('empresa_id')
    )
    return api_response(data=[evaluacion_dict(e) for e in evaluaciones])


@evaluaciones_bp.route('/evaluations/stats', methods=['GET'])
@login_required
def estadisticas():
    return api_response(data=EvaluacionService.estadisticas(current_user))


@evaluaciones_bp.route('/evaluations/<evaluacion_id>', methods=['GET'])
@login_required
def detalle(evaluacion_id):
    return api_response(data=evaluacion_dict(EvaluacionService.obtener(evaluacion_id, current_user)))
