from quart import Blueprint, request, jsonify
from courier_dispatch.core.jwt import JWTConfig
from courier_dispatch.models.assignment import AssignmentStatus
from courier_dispatch.services.courier_service import CourierService
from courier_dispatch.services.ledger import AssignmentLedger
import logging

logger = logging.getLogger(__name__)


def init_courier_routes(courier_service: CourierService, ledger: AssignmentLedger, jwt_config: JWTConfig):
    courier_bp = Blueprint('couriers', __name__, url_prefix='/api/v1')

    def claims():
        return jwt_config.claims_from_header(request.headers.get('Authorization'))

    @courier_bp.route('/couriers', methods=['POST'])
    async def create_courier():
        try:
            if claims() is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            data = await request.get_json(silent=True)
            if not data or not all(key in data for key in ['name', 'phone']):
                logger.warning("Invalid create courier request: missing required fields")
                return jsonify({"error": "Missing required fields"}), 400

            rating = data.get('rating')
            result = await courier_service.create_courier(
                name=data['name'],
                phone=data['phone'],
                rating=float(rating) if rating is not None else None
            )
            if "error" in result:
                return jsonify(result), result.get("status", 500)
            return jsonify(result), 201
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid create courier request: {str(e)}")
            return jsonify({"error": "Invalid rating"}), 400
        except Exception as e:
            logger.error(f"Create courier endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @courier_bp.route('/couriers/<uuid:courier_id>/location', methods=['PUT'])
    async def update_location(courier_id):
        try:
            token = claims()
            if token is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401
            if token["sub"] != str(courier_id):
                logger.warning(f"Courier {token['sub']} tried to move courier {courier_id}")
                return jsonify({"error": "Cannot update another courier's location"}), 403

            data = await request.get_json(silent=True)
            if not data or not all(key in data for key in ['latitude', 'longitude']):
                return jsonify({"error": "Missing required fields"}), 400

            accuracy = data.get('accuracy_meters')
            result = await courier_service.update_location(
                courier_id,
                latitude=float(data['latitude']),
                longitude=float(data['longitude']),
                accuracy_meters=float(accuracy) if accuracy is not None else None
            )
            if "error" in result:
                return jsonify(result), result.get("status", 500)
            return jsonify(result), 200
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid location update: {str(e)}")
            return jsonify({"error": "Invalid coordinates"}), 400
        except Exception as e:
            logger.error(f"Location update endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    @courier_bp.route('/couriers/<uuid:courier_id>/offline', methods=['POST'])
    async def go_offline(courier_id):
        token = claims()
        if token is None:
            return jsonify({"error": "Missing or invalid Authorization header"}), 401
        if token["sub"] != str(courier_id):
            return jsonify({"error": "Cannot change another courier's status"}), 403

        result = await courier_service.go_offline(courier_id)
        if "error" in result:
            return jsonify(result), result.get("status", 500)
        return jsonify(result), 200

    @courier_bp.route('/couriers/<uuid:courier_id>/assignments', methods=['GET'])
    async def courier_assignments(courier_id):
        try:
            if claims() is None:
                return jsonify({"error": "Missing or invalid Authorization header"}), 401

            statuses = None
            status_arg = request.args.get('status')
            if status_arg:
                try:
                    statuses = [AssignmentStatus(value.strip().upper()) for value in status_arg.split(',')]
                except ValueError:
                    return jsonify({"error": f"Unknown status filter: {status_arg}"}), 400

            assignments = await ledger.list_for_courier(courier_id, statuses)
            return jsonify({
                "courier_id": str(courier_id),
                "assignments": [assignment.to_dict() for assignment in assignments],
                "total_assignments": len(assignments)
            }), 200
        except Exception as e:
            logger.error(f"Courier assignments endpoint error: {str(e)}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

    return courier_bp
