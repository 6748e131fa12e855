import pytest

from grc_asignaciones.errors import EmptySurveyError, ValidationError, PermissionDeniedError
from grc_asignaciones.models import db, Asignacion, EvaluacionEmpresa
from grc_asignaciones.services.asignacion_service import AsignacionService
from grc_asignaciones.services.disponibilidad_service import DisponibilidadService
from grc_asignaciones.services.progreso_service import ProgresoService

from conftest import usuario, en_dias, responder


def test_scenario_a_all_dimensions_available(ctx, datos):
    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, usuario(datos.admin_id))
    assert disp['total_dimensiones'] == 3
    assert disp['dimensiones_asignadas'] == 0
    assert disp['dimensiones_disponibles'] == 3
    assert [d['codigo'] for d in disp['dimensiones']] == ['D1', 'D2', 'D3']
    assert disp['detalle_asignaciones'] == []


def test_assigned_dimension_reports_holder(ctx, datos):
    asignacion = AsignacionService.crear(
        datos.evaluacion_id, datos.d2_id, datos.u2_id, en_dias(7), actor=usuario(datos.admin_id)
    )
    responder(asignacion.id, usuario(datos.u2_id), 1)

    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, usuario(datos.admin_id))
    assert disp['dimensiones_asignadas'] == 1
    assert [d['id'] for d in disp['dimensiones']] == [datos.d1_id, datos.d3_id]
    assert len(disp['todas']) == 3

    detalle, = disp['detalle_asignaciones']
    assert detalle['dimension_id'] == datos.d2_id
    assert detalle['asignado_a'] == 'Usuario Dos'
    assert detalle['usuario_id'] == datos.u2_id
    assert detalle['estado'] == 'en_progreso'
    assert detalle['porcentaje_avance'] == 33.33
    assert detalle['asignacion_id'] == asignacion.id


def test_rejected_and_deactivated_holders_free_the_dimension(ctx, datos):
    admin = usuario(datos.admin_id)
    rechazada = AsignacionService.crear(
        datos.evaluacion_id, datos.d1_id, datos.u1_id, en_dias(7), requiere_revision=True, actor=admin
    )
    responder(rechazada.id, usuario(datos.u1_id))
    AsignacionService.revisar(rechazada.id, 'rechazar', 'rehacer', actor=admin)

    borrada = AsignacionService.crear(datos.evaluacion_id, datos.d3_id, datos.u2_id, en_dias(7), actor=admin)
    AsignacionService.desactivar(borrada.id, actor=admin)

    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, admin)
    assert disp['dimensiones_asignadas'] == 0
    assert disp['dimensiones_disponibles'] == 3


def test_rollup_and_availability_agree_after_rejection(ctx, datos):
    admin = usuario(datos.admin_id)
    rechazada = AsignacionService.crear(
        datos.evaluacion_id, datos.d1_id, datos.u1_id, en_dias(7), requiere_revision=True, actor=admin
    )
    AsignacionService.crear(datos.evaluacion_id, datos.d2_id, datos.u2_id, en_dias(7), actor=admin)
    responder(rechazada.id, usuario(datos.u1_id))
    AsignacionService.revisar(rechazada.id, 'rechazar', 'rehacer', actor=admin)

    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, admin)
    evaluacion = db.session.get(EvaluacionEmpresa, datos.evaluacion_id)
    progreso = ProgresoService.progreso_detallado(datos.evaluacion_id, admin)

    assert disp['dimensiones_asignadas'] == 1
    assert evaluacion.dimensiones_asignadas == disp['dimensiones_asignadas']
    assert progreso['evaluacion']['dimensiones_asignadas'] == disp['dimensiones_asignadas']
    # the rejected work no longer counts towards the average
    assert evaluacion.porcentaje_avance == 0.0


def test_availability_requires_privileged_actor(ctx, datos):
    with pytest.raises(PermissionDeniedError):
        DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, usuario(datos.u1_id))
    with pytest.raises(PermissionDeniedError):
        DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, usuario(datos.admin_otra_id))


def test_empty_survey_availability_and_bulk(ctx, datos):
    admin = usuario(datos.admin_id)
    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_vacia_id, admin)
    assert disp['total_dimensiones'] == 0
    assert disp['dimensiones'] == []

    with pytest.raises(EmptySurveyError):
        DisponibilidadService.asignar_multiples(
            datos.evaluacion_vacia_id, ['cualquiera'], datos.u1_id, en_dias(5), actor=admin
        )


def test_bulk_requires_ids(ctx, datos):
    with pytest.raises(ValidationError):
        DisponibilidadService.asignar_multiples(
            datos.evaluacion_id, [], datos.u1_id, en_dias(5), actor=usuario(datos.admin_id)
        )


def test_scenario_d_partial_success(ctx, datos, eventos):
    admin = usuario(datos.admin_id)
    existente = AsignacionService.crear(datos.evaluacion_id, datos.d1_id, datos.u2_id, en_dias(7), actor=admin)

    resultado = DisponibilidadService.asignar_multiples(
        datos.evaluacion_id, [datos.d1_id, datos.d2_id], datos.u1_id, en_dias(5), actor=admin
    )
    assert resultado['exitosos'] == 1
    assert resultado['errores'] == 1
    error, = resultado['errores_detalle']
    assert error['dimension_id'] == datos.d1_id
    assert error['code'] == 'dimension_ya_asignada'

    creada, = resultado['asignaciones']
    assert creada.dimension_id == datos.d2_id
    assert creada.usuario_asignado_id == datos.u1_id

    intacta = Asignacion.query.filter_by(id=existente.id).one()
    assert intacta.usuario_asignado_id == datos.u2_id
    assert intacta.activo is True

    # One AssignmentCreated per success, none for the failed item
    assert [e['assignment_id'] for e in eventos] == [existente.id, creada.id]


def test_bulk_collects_every_failure_kind(ctx, datos):
    resultado = DisponibilidadService.asignar_multiples(
        datos.evaluacion_id, [datos.d1_id, 'desconocida', datos.d1_id, datos.d3_id], datos.u1_id, en_dias(5),
        actor=usuario(datos.admin_id)
    )
    # Repeated ids collapse into one attempt
    assert resultado['exitosos'] == 2
    assert [e['code'] for e in resultado['errores_detalle']] == ['validation_error']
    assert Asignacion.query.filter_by(activo=True).count() == 2


def test_bulk_updates_rollup_once(ctx, datos):
    DisponibilidadService.asignar_multiples(
        datos.evaluacion_id, [datos.d1_id, datos.d2_id, datos.d3_id], datos.u1_id, en_dias(5),
        actor=usuario(datos.admin_id)
    )
    disp = DisponibilidadService.dimensiones_disponibles(datos.evaluacion_id, usuario(datos.admin_id))
    assert disp['dimensiones_disponibles'] == 0
    assert disp['todas'] and disp['dimensiones'] == []
