from quart import Blueprint, request, jsonify
from courier_dispatch.core.errors import StoreFailure
from courier_dispatch.core.jwt import JWTConfig
from courier_dispatch.models.outcomes import DispatchStatus
from courier_dispatch.services.assignment_engine import AssignmentEngine
from courier_dispatch.services.order_service import OrderService
import logging

logger = logging.getLogger(__name__)

DISPATCH_HTTP_STATUS = {
    DispatchStatus.OFFERED: 200,
    DispatchStatus.NO_COURIERS_AVAILABLE: 200,
    DispatchStatus.ALREADY_OFFERED: 409,
    DispatchStatus.ALREADY_ASSIGNED: 409,
    DispatchStatus.NOT_DISPATCHABLE: 409,
    DispatchStatus.ORDER_NOT_FOUND: 404,
    DispatchStatus.FAILED: 503,
}


def init_order_routes(order_service: OrderService, engine: AssignmentEngine, jwt_config: JWTConfig):
    order_bp = Blueprint('orders', __name__, url_prefix='/api/v1')

    def authorized() -> bool:
        claims = jwt_config.claims_from_header(request.headers.get('Authorization'))
        if claims is None:
            logger.warning("Missing or invalid Authorization header")
            return False
        return True

    @order_bp.route('/orders', methods=['POST'])
    async def create_order():
        try:
            if not authorized():
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            data = await request.get_json(silent=True)
            required = ['customer_name', 'address', 'pickup_latitude', 'pickup_longitude']
            if not data or not all(key in data for key in required):
                logger.warning("Invalid create order request: missing required fields")
                return jsonify({"error": "Missing required fields"}), 400

            result = await order_service.create_order(
                customer_name=data['customer_name'],
                address=data['address'],
                pickup_latitude=float(data['pickup_latitude']),
                pickup_longitude=float(data['pickup_longitude'])
            )
            if "error" in result:
                return jsonify(result), result.get("status", 500)
            return jsonify(result), 201
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid create order request: {str(e)}")
            return jsonify({"error": "Invalid pickup coordinates"}), 400
        except Exception as e:
            logger.error(f"Create order endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @order_bp.route('/orders/<uuid:order_id>', methods=['GET'])
    async def get_order(order_id):
        if not authorized():
            return jsonify({"error": "Missing or invalid Authorization header"}), 401
        result = await order_service.get_order(order_id)
        if "error" in result:
            return jsonify(result), result.get("status", 500)
        return jsonify(result), 200

    @order_bp.route('/orders/<uuid:order_id>/ready', methods=['POST'])
    async def order_ready(order_id):
        try:
            if not authorized():
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            order = await order_service.mark_ready(order_id)
            if "error" in order:
                return jsonify(order), order.get("status", 500)

            dispatch = await engine.dispatch(order_id)
            if not dispatch.ok:
                logger.warning(f"Order {order_id} is ready but was not offered: {dispatch.status.value}")
            return jsonify({"order_id": str(order_id), "dispatch": dispatch.to_dict()}), DISPATCH_HTTP_STATUS[dispatch.status]
        except Exception as e:
            logger.error(f"Order ready endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @order_bp.route('/orders/<uuid:order_id>/dispatch', methods=['POST'])
    async def dispatch_order(order_id):
        try:
            if not authorized():
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            dispatch = await engine.dispatch(order_id)
            return jsonify(dispatch.to_dict()), DISPATCH_HTTP_STATUS[dispatch.status]
        except Exception as e:
            logger.error(f"Dispatch endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @order_bp.route('/orders/<uuid:order_id>/assignments', methods=['GET'])
    async def order_assignments(order_id):
        try:
            if not authorized():
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            assignments = await engine.ledger.list_for_order(order_id)
            return jsonify({
                "order_id": str(order_id),
                "assignments": [assignment.to_dict() for assignment in assignments],
                "total_assignments": len(assignments)
            }), 200
        except Exception as e:
            logger.error(f"Order assignments endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @order_bp.route('/orders/<uuid:order_id>/dispatch-status', methods=['GET'])
    async def dispatch_status(order_id):
        try:
            if not authorized():
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            state = await engine.round_state(order_id)
            return jsonify({"order_id": str(order_id), "state": state.value}), 200
        except StoreFailure as e:
            return jsonify({"error": str(e)}), 503
        except Exception as e:
            logger.error(f"Dispatch status endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    return order_bp
