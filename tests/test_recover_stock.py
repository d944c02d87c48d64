"""Tests for the recover_stock.py script."""

import pytest

import recover_stock
from services.stock_service.config import Settings
from services.stock_service.repository import InventoryRepository
from shared.database import init_db, make_engine, make_session_factory


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'store.db'}"
    engine = make_engine(url)
    init_db(engine)
    db = make_session_factory(engine)()
    repo = InventoryRepository(db)
    repo.create_product("Linen Shirt", 10, product_id="p1")
    repo.create_transaction([{"id": "p1", "quantity": 3}, {"id": "ghost", "quantity": 1}], id="t1")
    db.commit()
    db.close()
    engine.dispose()

    monkeypatch.setattr(recover_stock, "get_settings", lambda: Settings(database_url=url))
    return url


def stock_of(url, product_id):
    engine = make_engine(url)
    db = make_session_factory(engine)()
    try:
        return InventoryRepository(db).get_product(product_id).stock
    finally:
        db.close()
        engine.dispose()


def test_dry_run_reports_without_writing(database_url, capsys):
    assert recover_stock.main([]) == 0

    out = capsys.readouterr().out
    assert "1 products differ" in out
    assert "t1 -> ghost" in out
    assert "Dry run" in out
    assert stock_of(database_url, "p1") == 10


def test_apply_writes_stock(database_url, capsys):
    assert recover_stock.main(["--apply"]) == 0

    assert "Updated 1 products" in capsys.readouterr().out
    assert stock_of(database_url, "p1") == 7
