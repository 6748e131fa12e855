from flask import current_app
from grc_asignaciones.models import db, AsignacionEvento
from grc_asignaciones.utils import retry_request, iso
import threading
import requests

ASSIGNMENT_CREATED = 'AssignmentCreated'
ASSIGNMENT_SUBMITTED_FOR_REVIEW = 'AssignmentSubmittedForReview'
ASSIGNMENT_APPROVED = 'AssignmentApproved'
ASSIGNMENT_REJECTED = 'AssignmentRejected'
ASSIGNMENT_REASSIGNED = 'AssignmentReassigned'

_PENDIENTES_KEY = 'eventos_pendientes'
EXTENSION_KEY = 'grc_eventos'


class EventoService:
    """
    Records workflow events inside the current transaction and, once the
    transaction commits, hands them to the notification subscribers.
    Delivery is fire-and-forget: the core never waits on it.
    """

    @staticmethod
    def registrar(asignacion, event_type, actor_id, destinatario_id, payload=None, actor_type='USER'):
        evento = AsignacionEvento(
            asignacion_id=asignacion.id,
            evaluacion_id=asignacion.evaluacion_id,
            actor_id=actor_id,
            actor_type=actor_type,
            event_type=event_type,
            destinatario_id=destinatario_id,
            payload=payload
        )
        db.session.add(evento)
        mensaje = {
            'event_type': event_type,
            'assignment_id': asignacion.id,
            'evaluation_id': asignacion.evaluacion_id,
            'actor_id': actor_id,
            'target_user_id': destinatario_id,
            'payload': payload or {},
        }
        db.session.info.setdefault(_PENDIENTES_KEY, []).append(mensaje)
        return mensaje

    @staticmethod
    def descartar():
        db.session.info.pop(_PENDIENTES_KEY, None)

    @staticmethod
    def despachar():
        """Call right after a successful commit."""
        pendientes = db.session.info.pop(_PENDIENTES_KEY, [])
        suscriptores = current_app.extensions.get(EXTENSION_KEY, [])
        for mensaje in pendientes:
            current_app.logger.info(
                f"Evento {mensaje['event_type']} asignacion={mensaje['assignment_id']} destinatario={mensaje['target_user_id']}"
            )
            for suscriptor in suscriptores:
                try:
                    suscriptor(mensaje)
                except Exception as e:
                    current_app.logger.error(f"Notification subscriber failed for {mensaje['event_type']}: {e}")
        return pendientes

    @staticmethod
    def suscribir(app, suscriptor):
        app.extensions.setdefault(EXTENSION_KEY, []).append(suscriptor)

    @staticmethod
    def historial(asignacion_id):
        eventos = AsignacionEvento.query.filter_by(asignacion_id=asignacion_id)\
            .order_by(AsignacionEvento.created_at.asc(), AsignacionEvento.id.asc()).all()
        return [{
            'event_type': e.event_type,
            'actor_id': e.actor_id,
            'actor_type': e.actor_type,
            'target_user_id': e.destinatario_id,
            'payload': e.payload or {},
            'created_at': iso(e.created_at)
        } for e in eventos]


class WebhookSubscriber:
    """POSTs each event as JSON to an external notification service."""

    def __init__(self, url, logger, timeout=5):
        self.url = url
        self.logger = logger
        self.timeout = timeout

    @retry_request(retries=3, backoff_factor=0.5)
    def _post(self, mensaje):
        response = requests.post(self.url, json=mensaje, timeout=self.timeout)
        response.raise_for_status()
        return response

    def _enviar(self, mensaje):
        try:
            self._post(mensaje)
        except requests.exceptions.RequestException as e:
            self.logger.error(f"Webhook delivery failed for {mensaje['event_type']} ({mensaje['assignment_id']}): {e}")

    def __call__(self, mensaje):
        threading.Thread(target=self._enviar, args=(mensaje,), daemon=True).start()
