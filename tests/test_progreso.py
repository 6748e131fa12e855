from datetime import timedelta

import pytest

from grc_asignaciones.errors import PermissionDeniedError, InvalidStateError, ValidationError
from grc_asignaciones.models import db, EvaluacionEmpresa, get_today
from grc_asignaciones.services.asignacion_service import AsignacionService
from grc_asignaciones.services.evaluacion_service import EvaluacionService
from grc_asignaciones.services.progreso_service import ProgresoService
from grc_asignaciones.seed_demo_data import seed

from conftest import usuario, en_dias, responder


def _evaluacion(datos):
    return db.session.get(EvaluacionEmpresa, datos.evaluacion_id)


def _asignar_todo(datos):
    admin = usuario(datos.admin_id)
    return [
        AsignacionService.crear(datos.evaluacion_id, dim, datos.u1_id, en_dias(10), actor=admin)
        for dim in (datos.d1_id, datos.d2_id, datos.d3_id)
    ]


def test_evaluation_completes_when_every_dimension_is_done(ctx, datos):
    asignaciones = _asignar_todo(datos)
    u1 = usuario(datos.u1_id)
    assert _evaluacion(datos).estado == 'activa'

    responder(asignaciones[0].id, u1, 1)
    evaluacion = _evaluacion(datos)
    assert evaluacion.estado == 'en_progreso'
    assert evaluacion.porcentaje_avance == pytest.approx(50.0 / 3)

    for a in asignaciones:
        responder(a.id, u1)

    evaluacion = _evaluacion(datos)
    assert evaluacion.estado == 'completada'
    assert evaluacion.dimensiones_completadas == 3
    assert evaluacion.porcentaje_avance == pytest.approx(100.0)
    assert evaluacion.fecha_completado is not None


def test_recalcular_is_idempotent_and_repairs_drift(ctx, datos):
    asignaciones = _asignar_todo(datos)
    responder(asignaciones[1].id, usuario(datos.u1_id), 2)

    primero = ProgresoService.recalcular(datos.evaluacion_id, commit=True)
    snapshot = (primero.estado, primero.dimensiones_asignadas, primero.dimensiones_completadas, primero.porcentaje_avance)

    evaluacion = _evaluacion(datos)
    evaluacion.dimensiones_completadas = 99
    db.session.commit()

    assert ProgresoService.recalcular_todas() == 2
    evaluacion = _evaluacion(datos)
    assert (evaluacion.estado, evaluacion.dimensiones_asignadas,
            evaluacion.dimensiones_completadas, evaluacion.porcentaje_avance) == snapshot


def test_recalcular_belongs_to_callers_transaction(ctx, datos):
    asignaciones = _asignar_todo(datos)
    responder(asignaciones[0].id, usuario(datos.u1_id))
    evaluacion = _evaluacion(datos)
    evaluacion.dimensiones_completadas = 99
    db.session.commit()

    assert ProgresoService.recalcular(datos.evaluacion_id).dimensiones_completadas == 1
    db.session.rollback()
    assert _evaluacion(datos).dimensiones_completadas == 99

    # replaying inside one transaction is harmless
    ProgresoService.recalcular(datos.evaluacion_id)
    ProgresoService.recalcular(datos.evaluacion_id)
    db.session.commit()
    assert _evaluacion(datos).dimensiones_completadas == 1


def test_vencida_is_computed_on_read(ctx, datos):
    _asignar_todo(datos)
    evaluacion = _evaluacion(datos)
    evaluacion.fecha_limite = get_today() - timedelta(days=1)
    db.session.commit()

    assert evaluacion.estado_display == 'vencida'
    detalle = ProgresoService.progreso_detallado(datos.evaluacion_id, usuario(datos.admin_id))
    assert detalle['evaluacion']['estado'] == 'vencida'
    assert detalle['evaluacion']['esta_vencida'] is True


def test_progreso_detallado_breakdown(ctx, datos):
    asignaciones = _asignar_todo(datos)
    responder(asignaciones[2].id, usuario(datos.u1_id))

    detalle = ProgresoService.progreso_detallado(datos.evaluacion_id, usuario(datos.u1_id))
    assert detalle['evaluacion']['dimensiones_completadas'] == 1
    assert detalle['evaluacion']['porcentaje_avance'] == 33.33

    por_codigo = {d['dimension']['codigo']: d for d in detalle['dimensiones']}
    assert por_codigo['D3']['completadas'] == 1
    assert por_codigo['D1']['pendientes'] == 1
    assert por_codigo['D1']['asignaciones'][0]['usuario'] == 'Usuario Uno'

    with pytest.raises(PermissionDeniedError):
        ProgresoService.progreso_detallado(datos.evaluacion_id, usuario(datos.externo_id))


def test_cancelar_is_sticky(ctx, datos):
    asignaciones = _asignar_todo(datos)
    superadmin = usuario(datos.superadmin_id)

    with pytest.raises(PermissionDeniedError):
        EvaluacionService.cancelar(datos.evaluacion_id, actor=usuario(datos.admin_id))

    evaluacion = EvaluacionService.cancelar(datos.evaluacion_id, motivo='fusión', actor=superadmin)
    assert evaluacion.estado == 'cancelada'
    assert 'fusión' in evaluacion.observaciones

    ProgresoService.recalcular(datos.evaluacion_id, commit=True)
    assert _evaluacion(datos).estado == 'cancelada'
    with pytest.raises(InvalidStateError):
        EvaluacionService.cancelar(datos.evaluacion_id, actor=superadmin)
    with pytest.raises(InvalidStateError):
        AsignacionService.registrar_respuesta(asignaciones[0].id, actor=usuario(datos.u1_id))


def test_asignar_evaluacion(ctx, datos):
    superadmin = usuario(datos.superadmin_id)

    with pytest.raises(PermissionDeniedError):
        EvaluacionService.asignar(datos.encuesta_id, datos.otra_empresa_id, None, en_dias(20), actor=usuario(datos.admin_id))
    with pytest.raises(ValidationError):
        # administrador from another company
        EvaluacionService.asignar(datos.encuesta_id, datos.otra_empresa_id, datos.admin_id, en_dias(20), actor=superadmin)
    with pytest.raises(ValidationError):
        # same survey already running for Acme
        EvaluacionService.asignar(datos.encuesta_id, datos.empresa_id, datos.admin_id, en_dias(20), actor=superadmin)

    evaluacion = EvaluacionService.asignar(
        datos.encuesta_id, datos.otra_empresa_id, datos.admin_otra_id, en_dias(20), actor=superadmin
    )
    assert evaluacion.estado == 'activa'
    assert evaluacion.total_dimensiones == 3
    assert evaluacion.dimensiones_asignadas == 0


def test_asignar_blocks_duplicate_of_overdue_evaluation(ctx, datos):
    superadmin = usuario(datos.superadmin_id)
    evaluacion = _evaluacion(datos)
    evaluacion.estado = 'vencida'
    db.session.commit()

    with pytest.raises(ValidationError) as exc:
        EvaluacionService.asignar(datos.encuesta_id, datos.empresa_id, datos.admin_id, en_dias(20), actor=superadmin)
    assert exc.value.details['evaluacion_id'] == datos.evaluacion_id

    evaluacion.estado = 'completada'
    db.session.commit()
    nueva = EvaluacionService.asignar(datos.encuesta_id, datos.empresa_id, datos.admin_id, en_dias(20), actor=superadmin)
    assert nueva.id != datos.evaluacion_id


def test_listar_and_estadisticas_by_role(ctx, datos):
    assert len(EvaluacionService.listar(usuario(datos.superadmin_id))) == 2
    assert len(EvaluacionService.listar(usuario(datos.admin_otra_id))) == 0
    assert EvaluacionService.listar(usuario(datos.u1_id)) == []

    AsignacionService.crear(datos.evaluacion_id, datos.d1_id, datos.u1_id, en_dias(5), actor=usuario(datos.admin_id))
    assert [e.id for e in EvaluacionService.listar(usuario(datos.u1_id))] == [datos.evaluacion_id]

    stats = EvaluacionService.estadisticas(usuario(datos.admin_id))
    assert stats['total'] == 2
    assert stats['en_progreso'] + stats['activas'] == 2


def test_seed_demo_data_is_rerunnable(ctx):
    primera = seed()
    segunda = seed()
    assert primera.id == segunda.id
    assert primera.total_dimensiones == 3
