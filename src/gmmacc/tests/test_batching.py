import pytest
import torch

from gmmacc._batching import FrameBatchLoader, choose_batch_size


def test_frame_batch_loader():
    """Test accessing frames in batches using FrameBatchLoader."""
    # 1000 frames of 1s, 1000 of 2s, 1000 of 3s
    X = torch.concatenate(
        [torch.ones((1000, 2)), 2 * torch.ones((1000, 2)), 3 * torch.ones((1000, 2))]
        )
    batch_loader = FrameBatchLoader(X, batch_size=1000)

    # There should be 3 batches
    assert len(batch_loader) == 3
    # Test __getitem__
    assert torch.all(batch_loader[0] == 1)
    assert torch.all(batch_loader[1] == 2)
    assert torch.all(batch_loader[2] == 3)
    # Test __iter__
    for i, (batch, batch_slice) in enumerate(batch_loader):
        expected_value = i + 1
        assert torch.all(batch == expected_value)
        assert batch_slice == slice(i * 1000, (i + 1) * 1000)
    # Test __repr__
    repr_str = repr(batch_loader)
    assert "Data shape: torch.Size([3000, 2])" in repr_str
    assert "batch_size: 1000" in repr_str
    assert "n_batches: 3" in repr_str

    # Test batch size None
    foo = FrameBatchLoader(X, batch_size=None)
    assert len(foo) == 1
    assert foo[0].shape == X.shape

    # A ragged last batch, and a batch larger than the utterance
    slices = [sl for _, sl in FrameBatchLoader(X, batch_size=1400)]
    assert slices == [slice(0, 1400), slice(1400, 2800), slice(2800, 3000)]
    assert len(FrameBatchLoader(X, batch_size=4000)) == 1

    # Test failures
    with pytest.raises(ValueError, match="batch_size must be positive"):
        FrameBatchLoader(X, batch_size=-10)
    with pytest.raises(ValueError, match="expects a 2D"):
        FrameBatchLoader(torch.ones(3))


def test_frame_batch_loader_empty():
    """An utterance without frames yields no batches."""
    loader = FrameBatchLoader(torch.zeros((0, 4)))
    assert len(loader) == 0
    assert list(loader) == []


def test_choose_batch_size():
    full = choose_batch_size(n_components=512, dim=40)
    pruned = choose_batch_size(n_components=512, dim=40, max_candidates=20)
    assert 1 <= full <= 65536
    assert 1 <= pruned <= 65536
