"""
Test suite for the mrv-guardian command line.
"""

import io
import json

import pytest


@pytest.fixture(scope="module")
def model_path(tmp_path_factory):
    from mrv_guardian.cli import main

    path = tmp_path_factory.mktemp("cli") / "model.json"
    assert main(['train', '--samples', '600', '--seed', '5', '--output', str(path)]) == 0
    return path


class TestTrain:
    """Test the train subcommand."""

    def test_writes_snapshot(self, model_path):
        data = json.loads(model_path.read_text())
        assert data['algorithm'] == 'IsolationForest'
        assert data['forest']['treeCount'] == 100

    def test_prints_summary(self, tmp_path, capsys):
        from mrv_guardian.cli import main

        main(['train', '--samples', '300', '--seed', '1', '--output', str(tmp_path / "m.json")])
        out = capsys.readouterr().out
        assert 'Label distribution' in out
        assert 'normal' in out
        assert 'Validation: precision=' in out
        assert 'Saved model to' in out


class TestScore:
    """Test the stdin/stdout scoring protocol."""

    def _score(self, model_path, request, monkeypatch, capsys):
        from mrv_guardian.cli import main

        monkeypatch.setattr('sys.stdin', io.StringIO(json.dumps(request)))
        code = main(['score', '--model', str(model_path)])
        return code, capsys.readouterr()

    def test_reading_request(self, model_path, inflated_reading, monkeypatch, capsys):
        code, captured = self._score(model_path, {'reading': inflated_reading}, monkeypatch, capsys)
        assert code == 0
        result = json.loads(captured.out)
        assert result['isAnomaly'] is True
        assert result['method'] == 'isolation_forest'

    def test_feature_request(self, model_path, normal_reading, monkeypatch, capsys):
        from mrv_guardian.features.reading_features import extract_features

        request = {'features': extract_features(normal_reading).tolist()}
        code, captured = self._score(model_path, request, monkeypatch, capsys)
        assert code == 0
        assert json.loads(captured.out)['isAnomaly'] is False

    def test_invalid_json(self, model_path, monkeypatch, capsys):
        from mrv_guardian.cli import main

        monkeypatch.setattr('sys.stdin', io.StringIO("not json"))
        assert main(['score', '--model', str(model_path)]) == 2

    def test_request_without_payload(self, model_path, monkeypatch, capsys):
        code, captured = self._score(model_path, {'other': 1}, monkeypatch, capsys)
        assert code == 2
        assert "'features' or 'reading'" in captured.err

    def test_missing_model(self, tmp_path, monkeypatch, capsys):
        code, captured = self._score(tmp_path / "absent.json", {'features': [0.5] * 8}, monkeypatch, capsys)
        assert code == 1
        assert 'Error:' in captured.err


class TestInfo:
    """Test the info subcommand."""

    def test_prints_metadata(self, model_path, capsys):
        from mrv_guardian.cli import main

        assert main(['info', '--model', str(model_path)]) == 0
        info = json.loads(capsys.readouterr().out)
        assert info['nTrees'] == 100
        assert info['features'][-1] == 'efficiencyRatio'
        assert info['hasDriftBaseline'] is False
        assert info['trainedOn'] > 0
