from routes.account import account_bp
from routes.admin import admin_bp
from routes.borrowing import borrowing_bp
from routes.catalog import catalog_bp
from routes.members import members_bp


def register_blueprints(app):
    for blueprint in (account_bp, catalog_bp, borrowing_bp, members_bp):
        app.register_blueprint(blueprint, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')
