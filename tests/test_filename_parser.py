import pytest
from slasshy.utils.filename_parser import (
    FilenameParser, FolderContext, ParsedEpisode, ParsedFolderEpisode, ParsedMovie,
    STRUCTURE_SEASON, STRUCTURE_TV, STRUCTURE_UNKNOWN,
)

def test_parse_sxxexx_episode():
    parsed = FilenameParser.parse("/M/Breaking.Bad.S01E01.Pilot.720p.mkv", root="/M")
    assert isinstance(parsed, ParsedEpisode)
    assert parsed.kind == "episode"
    assert parsed.title == "Breaking Bad"
    assert parsed.season == 1
    assert parsed.episode == 1
    assert parsed.episode_end is None

def test_parse_episode_range():
    parsed = FilenameParser.parse("/M/Show.Name.S02E03-E05.1080p.mkv")
    assert parsed.kind == "episode"
    assert parsed.title == "Show Name"
    assert (parsed.season, parsed.episode, parsed.episode_end) == (2, 3, 5)

@pytest.mark.parametrize("name, season, episode", [
    ("Show.Name.S03.E07.mkv", 3, 7),
    ("Show Name Season 2 Episode 4.mkv", 2, 4),
    ("Show Name - 1x02.mkv", 1, 2),
])
def test_parse_other_strict_markers(name, season, episode):
    parsed = FilenameParser.parse(f"/M/{name}")
    assert parsed.kind == "episode"
    assert parsed.title == "Show Name"
    assert parsed.season == season
    assert parsed.episode == episode

def test_parse_movie_with_noise():
    parsed = FilenameParser.parse("/M/Inception.2010.1080p.BluRay.x264.mkv", root="/M")
    assert isinstance(parsed, ParsedMovie)
    assert parsed.kind == "movie"
    assert parsed.title == "Inception"
    assert parsed.year == 2010
    assert parsed.season is None and parsed.episode is None

def test_codec_token_is_not_an_episode():
    parsed = FilenameParser.parse("/M/Some.Film.x264.mkv", root="/M")
    assert parsed.kind == "movie"
    assert parsed.title == "Some Film"

def test_year_only_title_is_kept():
    parsed = FilenameParser.parse("/M/1899.mkv", root="/M")
    assert parsed.kind == "movie"
    assert parsed.title == "1899"
    assert parsed.year is None

def test_year_outside_range_is_not_extracted():
    parsed = FilenameParser.parse("/M/Metropolis 1927.mkv", root="/M")
    assert parsed.year is None

def test_folder_fallback_uses_season_folder():
    parsed = FilenameParser.parse("/M/TV Shows/Foo/Season 2/Foo - 05.wmv", root="/M")
    assert isinstance(parsed, ParsedFolderEpisode)
    assert parsed.kind == "episode"
    assert parsed.title == "Foo"
    assert parsed.season == 2
    assert parsed.episode == 5

def test_folder_year_flows_into_episode():
    parsed = FilenameParser.parse("/M/Dark (2017)/Season 1/Dark.S01E03.mkv", root="/M")
    assert parsed.title == "Dark"
    assert parsed.year == 2017

def test_loose_episode_marker_under_tv_folder():
    parsed = FilenameParser.parse("/M/TV Shows/Foo/Foo E07.mkv", root="/M")
    assert parsed.kind == "episode"
    assert parsed.title == "Foo"
    assert parsed.season == 1
    assert parsed.episode == 7

def test_loose_episode_zero_is_rejected():
    parsed = FilenameParser.parse("/M/TV Shows/Foo E00.mkv", root="/M")
    assert parsed.kind == "movie"

def test_loose_marker_ignored_outside_tv_folder():
    parsed = FilenameParser.parse("/M/Films/Foo E07.mkv", root="/M")
    assert parsed.kind == "movie"

def test_loose_marker_ignored_with_codec():
    context = FolderContext(series_name=None, structure=STRUCTURE_TV)
    assert FilenameParser._try_episode("Foo E07 x264", context) is None

def test_generic_title_falls_back_to_series_name():
    parsed = FilenameParser.parse("/M/Foo/Season 1/Episode.S01E02.mkv", root="/M")
    assert parsed.title == "Foo"
    assert parsed.episode == 2

def test_series_name_containing_title_wins():
    parsed = FilenameParser.parse("/M/Star Trek Discovery/Season 1/Discovery.S01E01.mkv", root="/M")
    assert parsed.title == "Star Trek Discovery"

def test_root_limits_tv_keywords():
    # "shows" in the root itself must not make a plain file an episode
    parsed = FilenameParser.parse("/data/shows/Film 12.mkv", root="/data/shows")
    assert parsed.kind == "movie"

def test_analyze_folder_season_structure():
    ctx = FilenameParser.analyze_folder("/M/Breaking Bad (2008) [1080p]/Staffel 03/x.mkv")
    assert ctx.structure == STRUCTURE_SEASON
    assert ctx.season == 3
    assert ctx.series_name == "Breaking Bad"
    assert ctx.series_year == 2008
    assert ctx.is_tv

def test_analyze_folder_indicator_on_parent():
    ctx = FilenameParser.analyze_folder("/M/Foo Complete/x.mkv")
    assert ctx.structure == STRUCTURE_TV
    assert ctx.season is None

def test_analyze_folder_unknown():
    ctx = FilenameParser.analyze_folder("/M/Films/x.mkv", root="/M")
    assert ctx.structure == STRUCTURE_UNKNOWN
    assert not ctx.is_tv

def test_clean_folder_name_keeps_year_parentheses():
    assert FilenameParser.clean_folder_name("Foo [BD] (Dual Audio) (2019)") == "Foo (2019)"

def test_extract_series_name():
    assert FilenameParser.extract_series_name("The Office [2005]") == ("The Office", 2005)
    assert FilenameParser.extract_series_name("Severance") == ("Severance", None)

def test_windows_separators():
    parsed = FilenameParser.parse("C:\\Media\\Foo\\Season 4\\Foo - 11.mkv", root="C:\\Media")
    assert (parsed.title, parsed.season, parsed.episode) == ("Foo", 4, 11)

def test_parse_name_without_folder():
    parsed = FilenameParser.parse_name("The.Expanse.S02E05.WEB-DL.mkv")
    assert parsed.title == "The Expanse"
    assert (parsed.season, parsed.episode) == (2, 5)

def test_parse_is_pure():
    path = "/M/TV Shows/Foo/Season 2/Foo - 05.wmv"
    assert FilenameParser.parse(path, root="/M") == FilenameParser.parse(path, root="/M")

def test_clean_junk_strips_release_noise():
    assert FilenameParser.clean_junk("Movie Title 1080p WEB-DL DDP5.1 Atmos [YTS]") == "Movie Title"
