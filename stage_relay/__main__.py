from stage_relay import run


if __name__ == "__main__":
    run()
