from flask import Blueprint, request, current_app
from flask_login import login_required, current_user
from grc_asignaciones.services.asignacion_service import AsignacionService
from grc_asignaciones.services.disponibilidad_service import DisponibilidadService
from grc_asignaciones.services.respuesta_service import RespuestaService
from grc_asignaciones.services.evento_service import EventoService
from grc_asignaciones.errors import ValidationError
from grc_asignaciones.utils import api_response, iso, porcentaje_display

asignaciones_bp = Blueprint('asignaciones', __name__)


def asignacion_dict(a, incluir_eventos=False):
    data = {
        'id': a.id,
        'evaluacion_id': a.evaluacion_id,
        'encuesta_id': a.encuesta_id,
        'empresa_id': a.empresa_id,
        'tipo': 'evaluacion_completa' if a.es_evaluacion_completa else 'dimension',
        'dimension': {'id': a.dimension.id, 'codigo': a.dimension.codigo, 'nombre': a.dimension.nombre} if a.dimension else None,
        'usuario_asignado': {'id': a.usuario_asignado_id, 'nombre_completo': a.usuario_asignado.nombre_completo},
        'asignado_por_id': a.asignado_por_id,
        'estado': a.estado,
        'estado_display': a.estado_display,
        'esta_vencido': a.esta_vencido,
        'dias_restantes': a.dias_restantes,
        'fecha_asignacion': iso(a.fecha_asignacion),
        'fecha_limite': iso(a.fecha_limite),
        'fecha_completado': iso(a.fecha_completado),
        'total_preguntas': a.total_preguntas,
        'preguntas_respondidas': a.preguntas_respondidas,
        'porcentaje_avance': porcentaje_display(a.porcentaje_avance),
        'requiere_revision': a.requiere_revision,
        'estado_revision': a.estado_revision,
        'fecha_envio_revision': iso(a.fecha_envio_revision),
        'revisado_por_id': a.revisado_por_id,
        'fecha_revision': iso(a.fecha_revision),
        'comentarios_revision': a.comentarios_revision or '',
        'observaciones': a.observaciones or '',
    }
    if incluir_eventos:
        data['eventos'] = EventoService.historial(a.id)
    return data


def _json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("El cuerpo de la solicitud debe ser un objeto JSON")
    return data


@asignaciones_bp.route('/assignments', methods=['POST'])
@login_required
def crear():
    data = _json()
    asignacion = AsignacionService.crear(
        evaluacion_id=data.get('evaluacion_id'),
        dimension_id=data.get('dimension_id'),
        usuario_id=data.get('usuario_id'),
        fecha_limite=data.get('fecha_limite'),
        requiere_revision=data.get('requiere_revision', False),
        observaciones=data.get('observaciones', ''),
        actor=current_user
    )
    return api_response(data=asignacion_dict(asignacion), status=201)


@asignaciones_bp.route('/assignments/bulk', methods=['POST'])
@login_required
def crear_multiples():
    data = _json()
    dimension_ids = data.get('dimension_ids') or []
    if not isinstance(dimension_ids, list):
        raise ValidationError("'dimension_ids' debe ser una lista")

    resultado = DisponibilidadService.asignar_multiples(
        evaluacion_id=data.get('evaluacion_id'),
        dimension_ids=dimension_ids,
        usuario_id=data.get('usuario_id'),
        fecha_limite=data.get('fecha_limite'),
        requiere_revision=data.get('requiere_revision', False),
        observaciones=data.get('observaciones', ''),
        actor=current_user
    )
    resultado['asignaciones'] = [asignacion_dict(a) for a in resultado['asignaciones']]
    # 207 when some items failed, the caller must inspect errores_detalle
    status = 201 if resultado['errores'] == 0 else (207 if resultado['exitosos'] else 409)
    return api_response(success=resultado['exitosos'] > 0, data=resultado, status=status)


@asignaciones_bp.route('/assignments/<asignacion_id>/answer-recount', methods=['POST'])
@login_required
def recontar(asignacion_id):
    data = request.get_json(silent=True) or {}
    asignacion = AsignacionService.registrar_respuesta(asignacion_id, data.get('pregunta_id'), actor=current_user)
    return api_response(data=asignacion_dict(asignacion))


@asignaciones_bp.route('/assignments/<asignacion_id>/answers', methods=['POST'])
@login_required
def responder(asignacion_id):
    data = _json()
    pregunta_id = data.get('pregunta_id')
    if data.get('retirar'):
        RespuestaService.retirar_respuesta(asignacion_id, pregunta_id, actor=current_user)
    elif data.get('modo_revision'):
        RespuestaService.editar_en_revision(asignacion_id, pregunta_id, data.get('valor'), actor=current_user)
    else:
        RespuestaService.guardar_respuesta(asignacion_id, pregunta_id, data.get('valor'), actor=current_user)

    asignacion = AsignacionService.registrar_respuesta(asignacion_id, pregunta_id, actor=current_user)
    return api_response(data=asignacion_dict(asignacion))


@asignaciones_bp.route('/assignments/<asignacion_id>/review', methods=['POST'])
@login_required
def revisar(asignacion_id):
    data = _json()
    asignacion = AsignacionService.revisar(
        asignacion_id, data.get('accion'), data.get('comentarios'), actor=current_user
    )
    return api_response(data=asignacion_dict(asignacion))


@asignaciones_bp.route('/assignments/<asignacion_id>/reassign', methods=['POST'])
@login_required
def reasignar(asignacion_id):
    data = _json()
    asignacion = AsignacionService.reasignar(
        asignacion_id,
        data.get('usuario_id'),
        nueva_fecha_limite=data.get('fecha_limite'),
        motivo=data.get('motivo'),
        actor=current_user
    )
    return api_response(data=asignacion_dict(asignacion))


@asignaciones_bp.route('/assignments/<asignacion_id>/submit', methods=['POST'])
@login_required
def enviar_a_revision(asignacion_id):
    asignacion = AsignacionService.enviar_a_revision(asignacion_id, actor=current_user)
    return api_response(data=asignacion_dict(asignacion))


@asignaciones_bp.route('/assignments/<asignacion_id>', methods=['DELETE'])
@login_required
def desactivar(asignacion_id):
    AsignacionService.desactivar(asignacion_id, actor=current_user)
    current_app.logger.info(f"Asignacion {asignacion_id} desactivada por {current_user.id}")
    return api_response(data={'id': asignacion_id, 'activo': False})


@asignaciones_bp.route('/assignments', methods=['GET'])
@login_required
def listar():
    filtros = {
        'estado': request.args.get('estado'),
        'tipo': request.args.get('tipo'),
        'evaluacion_id': request.args.get('evaluacion_id'),
        'usuario_id': request.args.get('usuario_id'),
    }
    asignaciones = AsignacionService.listar(current_user, filtros)
    return api_response(data=[asignacion_dict(a) for a in asignaciones])


@asignaciones_bp.route('/assignments/mine', methods=['GET'])
@login_required
def mis_asignaciones():
    asignaciones = AsignacionService.mis_asignaciones(
        current_user, estado=request.args.get('estado'), tipo=request.args.get('tipo')
    )
    return api_response(data=[asignacion_dict(a) for a in asignaciones])


@asignaciones_bp.route('/assignments/pending-review', methods=['GET'])
@login_required
def pendientes_revision():
    asignaciones = AsignacionService.pendientes_revision(current_user)
    return api_response(data=[asignacion_dict(a) for a in asignaciones])


@asignaciones_bp.route('/assignments/stats', methods=['GET'])
@login_required
def estadisticas():
    return api_response(data=AsignacionService.estadisticas(current_user))


@asignaciones_bp.route('/assignments/<asignacion_id>', methods=['GET'])
@login_required
def detalle(asignacion_id):
    asignacion = AsignacionService.obtener(asignacion_id, current_user)
    return api_response(data=asignacion_dict(asignacion, incluir_eventos=True))
