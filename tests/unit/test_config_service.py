from services.config_service import ConfigManager


def test_reads_project_config(config_manager):
    assert config_manager.get("demand", "sheet_preference")[0] == "Total Demand"
    assert config_manager.get("supplementary.stock.quantity_column") == "Stock On Hand"


def test_missing_keys_return_default(config_manager):
    assert config_manager.get("nope", "still nope", default=3) == 3


def test_missing_file_gives_empty_config():
    manager = ConfigManager("does-not-exist.json")
    assert manager.config == {}


def test_invalid_json_gives_empty_config(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    manager = ConfigManager(str(bad))
    assert manager.config == {}
    assert manager.get("demand", default="fallback") == "fallback"
