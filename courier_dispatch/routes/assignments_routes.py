from quart import Blueprint, request, jsonify
from courier_dispatch.core.errors import StoreFailure
from courier_dispatch.core.jwt import JWTConfig
from courier_dispatch.models.outcomes import AcceptStatus, CompletionStatus, RejectStatus
from courier_dispatch.services.assignment_engine import AssignmentEngine
import logging
import uuid

logger = logging.getLogger(__name__)

ORDER_GONE = "Order no longer available"


def init_assignment_routes(engine: AssignmentEngine, jwt_config: JWTConfig):
    """Courier-facing actions; the acting courier is the token's subject."""
    assignment_bp = Blueprint('assignments', __name__, url_prefix='/api/v1')

    def current_courier():
        claims = jwt_config.claims_from_header(request.headers.get('Authorization'))
        if claims is None:
            return None
        try:
            return uuid.UUID(str(claims["sub"]))
        except ValueError:
            logger.warning(f"Token subject is not a courier id: {claims['sub']}")
            return None

    @assignment_bp.route('/orders/<uuid:order_id>/accept', methods=['POST'])
    async def accept_order(order_id):
        try:
            courier_id = current_courier()
            if courier_id is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            result = await engine.accept(order_id, courier_id)
            if result.status is AcceptStatus.WON:
                return jsonify(result.to_dict()), 200
            if result.status is AcceptStatus.TOO_LATE:
                return jsonify({**result.to_dict(), "error": ORDER_GONE}), 409
            return jsonify({**result.to_dict(), "error": "No offer for this courier"}), 404
        except StoreFailure as e:
            return jsonify({"error": "Assignment store unavailable, try again", "detail": str(e)}), 503
        except Exception as e:
            logger.error(f"Accept endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @assignment_bp.route('/orders/<uuid:order_id>/reject', methods=['POST'])
    async def reject_order(order_id):
        try:
            courier_id = current_courier()
            if courier_id is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            data = await request.get_json(silent=True) or {}
            result = await engine.reject(order_id, courier_id, data.get("reason"))
            if result.status is RejectStatus.ACKNOWLEDGED:
                return jsonify(result.to_dict()), 200
            if result.status is RejectStatus.ALREADY_RESOLVED:
                return jsonify({**result.to_dict(), "error": ORDER_GONE}), 409
            return jsonify({**result.to_dict(), "error": "No offer for this courier"}), 404
        except StoreFailure as e:
            return jsonify({"error": "Assignment store unavailable, try again", "detail": str(e)}), 503
        except Exception as e:
            logger.error(f"Reject endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    async def progress(order_id, action, label):
        try:
            courier_id = current_courier()
            if courier_id is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            outcome = await action(order_id, courier_id)
            body = {"order_id": str(order_id), "courier_id": str(courier_id), "status": outcome.value}
            if outcome is CompletionStatus.DONE:
                return jsonify(body), 200
            if outcome is CompletionStatus.NOT_ASSIGNED:
                return jsonify({**body, "error": "Order is not assigned to this courier"}), 409
            return jsonify({**body, "error": "Assignment not found"}), 404
        except StoreFailure as e:
            return jsonify({"error": "Assignment store unavailable, try again", "detail": str(e)}), 503
        except Exception as e:
            logger.error(f"{label} endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @assignment_bp.route('/orders/<uuid:order_id>/picked-up', methods=['POST'])
    async def picked_up(order_id):
        return await progress(order_id, engine.mark_picked_up, "Picked-up")

    @assignment_bp.route('/orders/<uuid:order_id>/delivered', methods=['POST'])
    async def delivered(order_id):
        return await progress(order_id, engine.complete, "Delivered")

    return assignment_bp
