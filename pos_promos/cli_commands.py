"""
Flask CLI commands for promotion management.

Commands:
- flask init-db: Create the promotion tables
- flask active-promotions: List the promotions eligible on a date
"""

import click
from datetime import date
from pos_promos import database
from pos_promos.services import promotion_service
from pos_promos.utils.number_format import parse_date


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create every table that does not exist yet."""
        try:
            database.create_tables()
            click.echo(click.style('✅ Tablas creadas', fg='green', bold=True))
        except Exception as e:
            click.echo(click.style(f'❌ Error al crear tablas: {str(e)}', fg='red'))
            raise SystemExit(1)

    @app.cli.command('active-promotions')
    @click.option('--date', 'as_of', default=None, help='Fecha de evaluación (AAAA-MM-DD), hoy por defecto')
    def active_promotions(as_of):
        """List the promotions that the evaluator would consider on a date."""
        try:
            as_of_date = parse_date(as_of) or date.today()
        except ValueError as e:
            click.echo(click.style(f'❌ {e}', fg='red'))
            raise SystemExit(2)

        promotions = promotion_service.list_active_promotions(database.get_session(), as_of_date)
        if not promotions:
            click.echo(f'No hay promociones activas al {as_of_date.isoformat()}')
            return

        click.echo(f'Promociones activas al {as_of_date.isoformat()}:')
        for promotion in promotions:
            uses = f'{promotion.uses_count}/{promotion.max_uses}' if promotion.max_uses is not None else f'{promotion.uses_count}/∞'
            click.echo(
                f'   #{promotion.id} {promotion.name} '
                f'[{promotion.promotion_type.value} / {promotion.discount_type.value}] usos {uses}'
            )
