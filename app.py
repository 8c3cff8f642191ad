"""Fleet rent accounting service.

A JSON API for the rent side of a driver fleet: drivers (and investors)
pick a rent plan and slab, rent accrues per day from the first successful
payment, and payments arrive either from the payment gateway webhook or
from an operator confirming cash/online receipts by hand.

To run the app locally:

    # Install the package and its dependencies
    pip install -e .

    # Initialise the database
    python app.py --init-db

    # Start the development server
    python app.py

Configuration comes from ``settings.DEFAULTS`` overridden by ``FLASK_*``
environment variables, e.g. ``FLASK_RENT_COVER_POLICY=daily``.
"""

import argparse
import logging
from datetime import datetime

from flask import Blueprint, Flask, current_app, jsonify, request

import catalog
from accrual import compute_payment_details
from errors import RentalError, ValidationError
from gateway import SIGNATURE_HEADERS, GatewayAdapter, PaymentOutcome
from models import db
from reconciler import PaymentReconciler
from selections import SelectionService, as_datetime
from settings import DEFAULTS, GatewayConfig, RentConfig
from wallets import WalletService


logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


def create_app(test_config=None) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(DEFAULTS)
    app.config.from_prefixed_env()
    if test_config is not None:
        app.config.from_mapping(test_config)

    db.init_app(app)

    rent_config = RentConfig.from_mapping(app.config)
    app.extensions['fleet_rent'] = {
        'selections': SelectionService(rent_config),
        'reconciler': PaymentReconciler(rent_config),
        'wallets': WalletService(rent_config),
        'gateway': GatewayAdapter(GatewayConfig.from_mapping(app.config)),
    }

    app.register_blueprint(api)
    return app


def service(name: str):
    return current_app.extensions['fleet_rent'][name]


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _int_arg(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer') from None


def selection_payload(selection, as_of=None) -> dict:
    """Selection as stored, plus the amounts due right now."""
    data = selection.to_dict()
    cover_policy = service('selections').config.cover_policy
    details = compute_payment_details(selection, as_of or datetime.now(), cover_policy)
    data['paymentDetails'] = details.to_dict()
    return data


@api.errorhandler(RentalError)
def handle_rental_error(error: RentalError):
    return jsonify({'error': error.message}), error.status_code


# ---------------------------------------------------------------------------
# Plan catalog

@api.route('/plans')
def list_plans():
    """List the plans offering slabs of ``?type=weekly|daily``."""
    plans = catalog.list_plans(request.args.get('type'))
    return jsonify([plan.to_dict() for plan in plans])


@api.route('/plans/<int:plan_id>')
def get_plan(plan_id: int):
    return jsonify(catalog.get_plan(plan_id).to_dict())


# ---------------------------------------------------------------------------
# Plan selections

@api.route('/selections', methods=['POST'])
def create_selection():
    """Enroll a driver in a plan.

    The chosen slab is either sent inline as ``selectedRentSlab`` or looked
    up from the catalog with ``planId`` + ``slabIndex``.
    """
    data = _body()
    plan_name = data.get('planName')
    plan_type = data.get('planType')
    deposit = data.get('securityDeposit')
    slab = data.get('selectedRentSlab')
    rent_slabs = data.get('rentSlabs')
    if data.get('planId') is not None:
        plan = catalog.get_plan(_int_arg(data['planId'], 'planId'))
        kind = catalog.parse_plan_type(plan_type)
        slab = catalog.find_slab(plan, kind, _int_arg(data.get('slabIndex', 0), 'slabIndex'))
        plan_name = plan_name or plan.name
        deposit = plan.security_deposit if deposit is None else deposit
        if rent_slabs is None:
            rent_slabs = [s.to_dict() for s in plan.slabs_of(kind)]
    selection = service('selections').create_selection(
        subject_mobile=data.get('subjectMobile'),
        plan_name=plan_name,
        plan_type=plan_type,
        security_deposit=deposit,
        slab=slab,
        subject_id=data.get('subjectId'),
        subject_username=data.get('subjectUsername'),
        subject_type=data.get('subjectType'),
        rent_slabs=rent_slabs,
        vehicle_id=data.get('vehicleId'),
    )
    return jsonify(selection_payload(selection)), 201


@api.route('/selections')
def list_selections():
    selections = service('selections').list_selections(subject_id=request.args.get('subjectId'),
                                                        subject_mobile=request.args.get('mobile'))
    return jsonify([s.to_dict() for s in selections])


@api.route('/selections/<int:selection_id>')
def get_selection(selection_id: int):
    return jsonify(selection_payload(service('selections').get_selection(selection_id)))


@api.route('/selections/<int:selection_id>/rent-summary')
def rent_summary(selection_id: int):
    summary = service('selections').compute_rent_summary(selection_id, request.args.get('asOf'))
    return jsonify(summary.to_dict())


@api.route('/selections/<int:selection_id>', methods=['PATCH'])
def update_selection(selection_id: int):
    """Admin edits: extra charge, adjustment and/or a bulk payment entry."""
    data = _body()
    selection = service('reconciler').update_selection(
        selection_id,
        extra_amount=data.get('extraAmount'),
        extra_reason=data.get('extraReason', ''),
        adjustment_amount=data.get('adjustmentAmount'),
        adjustment_reason=data.get('adjustmentReason', ''),
        admin_paid_amount=data.get('adminPaidAmount'),
        admin_payment_type=data.get('adminPaymentType'),
    )
    return jsonify(selection_payload(selection))


@api.route('/selections/<int:selection_id>/status', methods=['PUT'])
def change_status(selection_id: int):
    selection = service('selections').change_status(selection_id, _body().get('status'))
    return jsonify(selection_payload(selection))


@api.route('/selections/<int:selection_id>/pause', methods=['POST'])
def pause_selection(selection_id: int):
    selection = service('selections').pause_accrual(selection_id, _body().get('pausedAt'))
    return jsonify(selection_payload(selection))


@api.route('/selections/<int:selection_id>/resume', methods=['POST'])
def resume_selection(selection_id: int):
    return jsonify(selection_payload(service('selections').resume_accrual(selection_id)))


# ---------------------------------------------------------------------------
# Payments

@api.route('/selections/<int:selection_id>/confirm-payment', methods=['POST'])
def confirm_payment(selection_id: int):
    """Operator confirmation of a payment received outside the gateway."""
    data = _body()
    selection = service('reconciler').confirm_manual_payment(selection_id,
                                                             payment_mode=data.get('paymentMode'),
                                                             paid_amount=data.get('paidAmount'),
                                                             payment_type=data.get('paymentType'))
    return jsonify(selection_payload(selection))


@api.route('/selections/<int:selection_id>/online-payment', methods=['POST'])
def online_payment(selection_id: int):
    """Client-side confirmation of a gateway payment."""
    outcome = PaymentOutcome.from_mapping(_body(), gateway=service('gateway').config.name)
    selection = service('reconciler').confirm_gateway_payment(selection_id, outcome)
    return jsonify(selection_payload(selection))


@api.route('/payments/zwitch/callback', methods=['POST'])
def gateway_callback():
    adapter = service('gateway')
    signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    if not adapter.verify_signature(request.get_data(), signature):
        return jsonify({'error': 'Invalid signature'}), 401
    outcome = adapter.parse_callback(_body())
    if outcome.selection_id is None:
        raise ValidationError('Callback does not reference a plan selection')
    logger.info('%s callback %s (%s) for selection %s', adapter.config.name,
                outcome.transaction_id, outcome.status.value, outcome.selection_id)
    selection = service('reconciler').confirm_gateway_payment(outcome.selection_id, outcome)
    return jsonify({'success': True, 'selectionId': selection.id,
                    'paymentStatus': selection.payment_status})


# ---------------------------------------------------------------------------
# Vehicles

@api.route('/vehicles/<int:vehicle_id>/status', methods=['POST'])
def vehicle_status(vehicle_id: int):
    """Pause or resume the selections riding on a vehicle."""
    data = _body()
    changed = service('selections').sync_vehicle_status(vehicle_id, data.get('status'),
                                                        as_datetime(data.get('at')))
    return jsonify({'vehicleId': vehicle_id, 'updated': [s.id for s in changed]})


# ---------------------------------------------------------------------------
# Wallets

@api.route('/wallets/<owner_type>', methods=['POST'])
def wallet_transaction(owner_type: str):
    data = _body()
    wallet = service('wallets').apply(phone=data.get('phone'),
                                      amount=data.get('amount'),
                                      description=data.get('description', ''),
                                      type=data.get('type'),
                                      owner_type=owner_type)
    return jsonify(wallet.to_dict())


@api.route('/wallets/<owner_type>/<phone>')
def get_wallet(owner_type: str, phone: str):
    return jsonify(service('wallets').get_wallet(phone, owner_type).to_dict())


def init_db():
    """Initialise the database tables."""
    db.create_all()
    print("Database initialised.")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Fleet rent accounting service")
    parser.add_argument('--init-db', action='store_true', help='Initialise the database')
    args = parser.parse_args()
    app = create_app()
    logging.basicConfig(level=app.config['RENT_LOG_LEVEL'],
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    if args.init_db:
        with app.app_context():
            init_db()
    else:
        app.run(debug=True)
