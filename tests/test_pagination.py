import config
from pagination import page_params, paginate


class TestPaginate:

    def test_single_page_has_no_neighbours(self):
        assert paginate(1, 10, 5) == {"page": 1, "limit": 10, "total": 5, "totalPages": 1}

    def test_middle_page(self):
        p = paginate(2, 10, 25)
        assert p["totalPages"] == 3
        assert p["nextPage"] == 3
        assert p["prevPage"] == 1

    def test_last_page(self):
        p = paginate(3, 10, 25)
        assert "nextPage" not in p
        assert p["prevPage"] == 2

    def test_empty(self):
        p = paginate(1, 10, 0)
        assert p["totalPages"] == 0
        assert "nextPage" not in p and "prevPage" not in p


class TestPageParams:

    def test_defaults(self):
        assert page_params() == (config.DEFAULT_PAGE, config.DEFAULT_LIMIT)

    def test_strings_are_parsed(self):
        assert page_params("3", "25") == (3, 25)

    def test_invalid_values_fall_back(self):
        assert page_params("abc", 0) == (config.DEFAULT_PAGE, config.DEFAULT_LIMIT)
        assert page_params(-2, "x") == (config.DEFAULT_PAGE, config.DEFAULT_LIMIT)
