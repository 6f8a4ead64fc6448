from flask import Blueprint, jsonify
from weatherguessr.services.multiplayer.rankings import CATEGORIES, STATE_CODES

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the Weatherguessr game server!'})

@main.route('/api/catalog')
def catalog():
    """Categories and states clients need to render a round."""
    return jsonify({
        'categories': CATEGORIES,
        'states': STATE_CODES,
    })
